"""
Incremental market synchronization

Pulls newly created conditions from the PnL subgraph and materializes them
into conditions/events/markets/outcomes/tags:

- Resumes from the most recently created market already stored
- Pages through the subgraph with a (creationTimestamp, id) keyset cursor
- Skips conditions from creators outside the allow-list and conditions
  that already exist
- Downloads metadata and icons from Irys/Arweave
- Guards against overlapping runs with a time-boxed advisory lock in
  sync_status, and bounds each run with a wall-clock budget
"""
import asyncio
import re
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from config import Config
from crud import markets as markets_crud
from crud import sync_status as sync_status_crud
from database import get_db_session
from models.sync import (
    EventMetadata,
    MarketMetadata,
    SubgraphCondition,
    SyncCursor,
    SyncErrorDetail,
    SyncRunResult,
    SyncStats,
)
from services.metadata import MetadataClient, MetadataError
from services.storage import StorageService, storage_service
from services.subgraph import SubgraphClient
from utils.logger import get_logger, log_db_query, log_sync_summary

logger = get_logger(__name__)

SERVICE_NAME = "market_sync"
SUBGRAPH_NAME = "pnl"

SYNC_TIME_LIMIT_SECONDS = 250
SYNC_MAX_DURATION_SECONDS = 300
EXISTING_ID_CHUNK_SIZE = 200
STALE_LOCK_AFTER = timedelta(minutes=15)

TAG_MAX_LENGTH = 100


class ConditionValidationError(ValueError):
    """A condition is missing a field required to materialize it"""


class RecordOutcome(str, Enum):
    """What happened to one condition during a sync pass"""
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED_INVALID_TIMESTAMP = "skipped_invalid_timestamp"
    SKIPPED_INVALID_RECORD = "skipped_invalid_record"  # malformed and without an id to key the cursor on
    SKIPPED_MISSING_CREATOR = "skipped_missing_creator"
    SKIPPED_CREATOR = "skipped_creator"
    SKIPPED_EXISTING = "skipped_existing"
    DEFERRED = "deferred"  # time budget ran out before this record was attempted


# Outcomes that leave the cursor where it was
_CURSOR_HOLDING_OUTCOMES = {
    RecordOutcome.SKIPPED_INVALID_TIMESTAMP,
    RecordOutcome.SKIPPED_INVALID_RECORD,
    RecordOutcome.DEFERRED,
}


def advance_cursor(
    cursor: Optional[SyncCursor],
    record_cursor: Optional[SyncCursor],
    outcome: RecordOutcome
) -> Optional[SyncCursor]:
    """
    Next cursor after examining one record

    The cursor tracks the last record examined, not the last one processed:
    skips and per-record failures advance it. Records with no usable
    timestamp and records deferred by the time budget do not. The cursor
    never moves backwards.
    """
    if outcome in _CURSOR_HOLDING_OUTCOMES or record_cursor is None:
        return cursor
    if not record_cursor.is_after(cursor):
        return cursor
    return record_cursor


def tag_slug(name: str) -> str:
    """Lower-case, collapse runs of non [a-z0-9] into '-', cap at 100 chars"""
    return re.sub(r"[^a-z0-9]+", "-", name.lower())[:TAG_MAX_LENGTH]


def timestamp_to_datetime(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class MarketRepository:
    """
    Storage operations used by the sync, one short-lived session per call

    Each call commits on its own so a failure materializing one record never
    rolls back rows written for earlier records.
    """

    def __init__(self, session_factory: Callable = get_db_session):
        self._session_factory = session_factory

    async def get_last_processed_cursor(self) -> Optional[SyncCursor]:
        async with self._session_factory() as db:
            last = await markets_crud.get_last_created_market(db)
        if not last:
            return None
        condition_id, created_at = last
        if not condition_id or not created_at:
            return None
        return SyncCursor(creation_timestamp=int(created_at.timestamp()), condition_id=condition_id)

    async def get_existing_condition_ids(self, condition_ids: Iterable[str]) -> Set[str]:
        start_time = time.time()
        async with self._session_factory() as db:
            existing = await markets_crud.get_existing_condition_ids(db, condition_ids, EXISTING_ID_CHUNK_SIZE)
        log_db_query(logger, "SELECT", "conditions", (time.time() - start_time) * 1000, len(existing))
        return existing

    async def upsert_condition(self, **fields) -> None:
        async with self._session_factory() as db:
            await markets_crud.upsert_condition(db, **fields)

    async def get_event_id_by_slug(self, slug: str) -> Optional[str]:
        async with self._session_factory() as db:
            return await markets_crud.get_event_id_by_slug(db, slug)

    async def create_event(self, **fields) -> str:
        async with self._session_factory() as db:
            return await markets_crud.create_event(db, **fields)

    async def get_tag_id_by_slug(self, slug: str) -> Optional[int]:
        async with self._session_factory() as db:
            return await markets_crud.get_tag_id_by_slug(db, slug)

    async def create_tag(self, name: str, slug: str) -> int:
        async with self._session_factory() as db:
            return await markets_crud.create_tag(db, name, slug)

    async def link_event_tag(self, event_id: str, tag_id: int) -> None:
        async with self._session_factory() as db:
            await markets_crud.link_event_tag(db, event_id, tag_id)

    async def market_exists(self, condition_id: str) -> bool:
        async with self._session_factory() as db:
            return await markets_crud.market_exists(db, condition_id)

    async def create_market(self, **fields) -> None:
        async with self._session_factory() as db:
            await markets_crud.create_market(db, **fields)

    async def create_outcomes(self, outcomes: List[Dict[str, Any]]) -> None:
        async with self._session_factory() as db:
            await markets_crud.create_outcomes(db, outcomes)

    async def is_sync_running(self) -> bool:
        async with self._session_factory() as db:
            return await sync_status_crud.is_sync_running(db, SERVICE_NAME, SUBGRAPH_NAME, STALE_LOCK_AFTER)

    async def update_sync_status(self, status: str, **kwargs) -> None:
        async with self._session_factory() as db:
            await sync_status_crud.update_sync_status(db, SERVICE_NAME, SUBGRAPH_NAME, status, **kwargs)


class MarketSyncService:
    """Runs the incremental subgraph → database market sync"""

    def __init__(
        self,
        repository: Optional[MarketRepository] = None,
        subgraph: Optional[SubgraphClient] = None,
        metadata: Optional[MetadataClient] = None,
        storage: Optional[StorageService] = None,
        allowed_creators: Optional[Iterable[str]] = None,
        time_limit_seconds: float = SYNC_TIME_LIMIT_SECONDS,
        max_duration_seconds: float = SYNC_MAX_DURATION_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.repository = repository or MarketRepository()
        self.subgraph = subgraph or SubgraphClient()
        self.metadata = metadata or MetadataClient()
        self.storage = storage or storage_service
        if allowed_creators is None:
            allowed_creators = Config.get_allowed_creators()
        self.allowed_creators = {addr.lower() for addr in allowed_creators}
        self.time_limit_seconds = time_limit_seconds
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock

    async def run(self) -> SyncRunResult:
        """
        One guarded sync run

        Returns SyncRunResult(skipped=True) if another run holds the lock.
        Unexpected errors are recorded in sync_status and re-raised.
        """
        if await self.repository.is_sync_running():
            logger.info("🚫 Sync already running, skipping...")
            return SyncRunResult(skipped=True)

        await self.repository.update_sync_status("running")
        logger.info("🚀 Starting incremental market synchronization...")

        start_time = time.time()
        try:
            stats = await asyncio.wait_for(self.sync_markets(), timeout=self.max_duration_seconds)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"💥 Sync failed: {message}", exc_info=True)
            await self.repository.update_sync_status("error", error_message=message)
            raise

        await self.repository.update_sync_status(
            "completed",
            error_message=None,
            total_processed=stats.processed_count
        )

        log_sync_summary(
            logger,
            fetched=stats.fetched_count,
            processed=stats.processed_count,
            skipped_existing=stats.skipped_existing_count,
            skipped_creators=stats.skipped_creator_count,
            errors=len(stats.errors),
            time_limit_reached=stats.time_limit_reached,
            duration_ms=(time.time() - start_time) * 1000
        )
        return SyncRunResult(stats=stats)

    def _time_exhausted(self, started_at: float) -> bool:
        return self._clock() - started_at >= self.time_limit_seconds

    async def sync_markets(self) -> SyncStats:
        """Page through the subgraph from the stored high-water mark until done or out of time"""
        started_at = self._clock()
        cursor = await self.repository.get_last_processed_cursor()

        if cursor:
            cursor_iso = timestamp_to_datetime(cursor.creation_timestamp).isoformat()
            logger.info(f"⏱️ Resuming sync after condition {cursor.condition_id} (created at {cursor_iso})")
        else:
            logger.info("📥 No existing markets found, starting full sync")

        stats = SyncStats(cursor=cursor)

        while not self._time_exhausted(started_at):
            page = await self.subgraph.fetch_conditions_page(cursor)

            if not page:
                logger.info("📦 PnL subgraph returned no additional conditions")
                break

            stats.fetched_count += len(page)
            logger.info(f"📑 Processing {len(page)} conditions (running total fetched: {stats.fetched_count})")

            existing_ids = await self.repository.get_existing_condition_ids(c.id for c in page if c.id)
            page_start_cursor = cursor

            for condition in page:
                outcome, cursor = await self._process_record(condition, cursor, existing_ids, started_at, stats)
                if outcome is RecordOutcome.DEFERRED:
                    logger.warning("⏹️ Time limit reached during market processing, aborting sync loop")
                    stats.time_limit_reached = True
                    break

            stats.cursor = cursor

            if stats.time_limit_reached:
                break

            if len(page) < self.subgraph.page_size:
                logger.info("📭 Last fetched page was smaller than the configured page size; stopping pagination")
                break

            if cursor == page_start_cursor:
                # A full page with no usable timestamps would be fetched again forever
                logger.warning("⚠️ Cursor did not advance over a full page; stopping pagination")
                break

        return stats

    async def _process_record(
        self,
        condition: SubgraphCondition,
        cursor: Optional[SyncCursor],
        existing_ids: Set[str],
        started_at: float,
        stats: SyncStats
    ) -> Tuple[RecordOutcome, Optional[SyncCursor]]:
        """Classify/materialize one condition; returns its outcome and the next cursor"""
        creation_timestamp = condition.parsed_timestamp()
        if creation_timestamp is None:
            logger.error(
                f"⚠️ Skipping condition {condition.id} - invalid creationTimestamp: {condition.creation_timestamp}"
            )
            return RecordOutcome.SKIPPED_INVALID_TIMESTAMP, cursor

        if condition.validation_error:
            logger.error(f"❌ Malformed subgraph condition {condition.id or '<no id>'}: {condition.validation_error}")
            stats.errors.append(SyncErrorDetail(
                condition_id=condition.id or "unknown",
                error=f"Invalid subgraph record: {condition.validation_error}",
            ))
            if not condition.id:
                return RecordOutcome.SKIPPED_INVALID_RECORD, cursor

        record_cursor = SyncCursor(creation_timestamp=creation_timestamp, condition_id=condition.id)

        if condition.validation_error:
            outcome = RecordOutcome.FAILED
        elif not condition.creator:
            logger.error(f"⚠️ Skipping condition {condition.id} - missing creator/owner field")
            outcome = RecordOutcome.SKIPPED_MISSING_CREATOR
        elif condition.creator.lower() not in self.allowed_creators:
            stats.skipped_creator_count += 1
            logger.info(f"🚫 Skipping market {condition.id} - creator {condition.creator} not in allowed list")
            outcome = RecordOutcome.SKIPPED_CREATOR
        elif condition.id in existing_ids:
            stats.skipped_existing_count += 1
            outcome = RecordOutcome.SKIPPED_EXISTING
        elif self._time_exhausted(started_at):
            return RecordOutcome.DEFERRED, cursor
        else:
            try:
                await self.process_market(condition)
                stats.processed_count += 1
                logger.info(f"✅ Processed market: {condition.id}")
                outcome = RecordOutcome.PROCESSED
            except Exception as e:
                logger.error(f"❌ Error processing market {condition.id}: {e}")
                stats.errors.append(SyncErrorDetail(condition_id=condition.id, error=str(e) or type(e).__name__))
                outcome = RecordOutcome.FAILED

        return outcome, advance_cursor(cursor, record_cursor, outcome)

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    async def process_market(self, condition: SubgraphCondition) -> None:
        """Materialize condition → event (+tags) → market (+outcomes)"""
        await self._process_condition(condition)
        metadata, raw_metadata = await self.metadata.fetch_metadata(condition.arweave_hash)
        event_id = await self._process_event(metadata.event, condition.creator)
        await self._process_market_data(condition, metadata, raw_metadata, event_id)

    def _require_timestamp(self, condition: SubgraphCondition) -> int:
        if condition.creation_timestamp in (None, ""):
            raise ConditionValidationError(f"Market {condition.id} missing required creationTimestamp field")
        creation_timestamp = condition.parsed_timestamp()
        if creation_timestamp is None:
            raise ConditionValidationError(
                f"Market {condition.id} has invalid creationTimestamp: {condition.creation_timestamp}"
            )
        return creation_timestamp

    async def _process_condition(self, condition: SubgraphCondition) -> None:
        for attr, label in (
            ("oracle", "oracle"),
            ("question_id", "questionId"),
            ("creator", "creator"),
            ("arweave_hash", "arweaveHash"),
        ):
            if not getattr(condition, attr):
                raise ConditionValidationError(f"Market {condition.id} missing required {label} field")

        creation_timestamp = self._require_timestamp(condition)

        await self.repository.upsert_condition(
            condition_id=condition.id,
            oracle=condition.oracle,
            question_id=condition.question_id,
            resolved=condition.resolved,
            arweave_hash=condition.arweave_hash,
            creator=condition.creator,
            created_at=timestamp_to_datetime(creation_timestamp),
        )
        logger.debug(f"Processed condition: {condition.id}")

    async def _process_event(self, event: EventMetadata, creator: str) -> str:
        """Resolve the event by slug, creating it (with icon and tags) if new"""
        if not event or not event.slug or not event.title:
            raise MetadataError(f"Invalid event data: {event.model_dump() if event else event}")

        existing_id = await self.repository.get_event_id_by_slug(event.slug)
        if existing_id:
            logger.debug(f"Event {event.slug} already exists, using existing ID: {existing_id}")
            return existing_id

        icon_url = None
        if event.icon:
            icon_url = await self._download_and_save_image(event.icon, f"events/icons/{event.slug}.jpg")

        logger.info(f"Creating new event: {event.slug} by creator: {creator}")
        event_id = await self.repository.create_event(
            slug=event.slug,
            title=event.title,
            creator=creator,
            icon_url=icon_url,
            show_market_icons=event.show_market_icons is not False,
            rules=event.rules or None,
        )
        if not event_id:
            raise RuntimeError("Event creation failed: no ID returned")

        if event.tags:
            await self._process_tags(event_id, event.tags)

        return event_id

    async def _process_tags(self, event_id: str, tag_names: List[Any]) -> None:
        for tag_name in tag_names:
            if not isinstance(tag_name, str):
                logger.warning(f"Skipping invalid tag: {tag_name!r}")
                continue

            name = tag_name[:TAG_MAX_LENGTH]
            slug = tag_slug(name)

            try:
                tag_id = await self.repository.get_tag_id_by_slug(slug)
                if tag_id is None:
                    tag_id = await self.repository.create_tag(name, slug)
            except Exception as e:
                logger.error(f"Failed to create tag {name}: {e}")
                continue

            try:
                await self.repository.link_event_tag(event_id, tag_id)
            except Exception as e:
                logger.error(f"Failed to link tag {name} to event {event_id}: {e}")

    async def _process_market_data(
        self,
        condition: SubgraphCondition,
        metadata: MarketMetadata,
        raw_metadata: Dict[str, Any],
        event_id: str
    ) -> None:
        if not event_id:
            raise ValueError(f"Invalid eventId: {event_id}. Event must be created first.")

        if await self.repository.market_exists(condition.id):
            logger.info(f"Market {condition.id} already exists, skipping...")
            return

        icon_url = None
        if metadata.icon:
            icon_url = await self._download_and_save_image(metadata.icon, f"markets/icons/{metadata.slug}.jpg")

        creation_timestamp = self._require_timestamp(condition)

        await self.repository.create_market(
            condition_id=condition.id,
            event_id=event_id,
            title=metadata.name,
            slug=metadata.slug,
            short_title=metadata.short_title,
            icon_url=icon_url,
            is_resolved=condition.resolved,
            metadata=raw_metadata,
            created_at=timestamp_to_datetime(creation_timestamp),
        )

        if metadata.outcomes:
            await self.repository.create_outcomes([
                {
                    "condition_id": condition.id,
                    "outcome_text": outcome.outcome,
                    "outcome_index": index,
                    "token_id": outcome.token_id or f"{condition.id}{index}",
                }
                for index, outcome in enumerate(metadata.outcomes)
            ])

    async def _download_and_save_image(self, content_hash: str, storage_path: str) -> Optional[str]:
        """Best-effort icon re-hosting; any failure yields None"""
        try:
            data = await self.metadata.download(content_hash)
            if data is None:
                return None
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(
                None,
                lambda: self.storage.upload_asset(storage_path, data)
            )
        except Exception as e:
            logger.error(f"Failed to process image {content_hash}: {e}")
            return None


# Global instance
market_sync_service = MarketSyncService()
