"""
Tests for the incremental market sync

Covers:
- Cursor advance rule (monotonic, held on bad timestamps / deferral)
- Creator allow-list, existing-row skips, per-record error aggregation
- Pagination, time budget and the run() advisory lock
"""
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from models.sync import MarketMetadata, SubgraphCondition, SyncCursor
from services.market_sync import (
    MarketSyncService,
    RecordOutcome,
    STALE_LOCK_AFTER,
    advance_cursor,
    tag_slug,
)
from services.metadata import MetadataError
from services.subgraph import SubgraphError, normalize_condition


ALLOWED = "0xa4221e79aa4c29c8ab2f76be76a4cc97579e542d"
STRANGER = "0x000000000000000000000000000000000000dead"


# ============================================================================
# Fakes
# ============================================================================

class FakeRepository:
    """In-memory stand-in for MarketRepository"""

    def __init__(self, existing_ids=(), last_cursor=None, running=False):
        self.conditions = {cid: {} for cid in existing_ids}
        self.events = {}
        self.markets = {}
        self.outcomes = []
        self.tags = {}
        self.links = set()
        self.statuses = []
        self.last_cursor = last_cursor
        self.running = running

    async def get_last_processed_cursor(self):
        return self.last_cursor

    async def get_existing_condition_ids(self, condition_ids):
        return {cid for cid in condition_ids if cid in self.conditions}

    async def upsert_condition(self, condition_id, **fields):
        self.conditions[condition_id] = fields

    async def get_event_id_by_slug(self, slug):
        event = self.events.get(slug)
        return event["id"] if event else None

    async def create_event(self, slug, **fields):
        event_id = f"event-{len(self.events) + 1}"
        self.events[slug] = {"id": event_id, **fields}
        return event_id

    async def get_tag_id_by_slug(self, slug):
        tag = self.tags.get(slug)
        return tag["id"] if tag else None

    async def create_tag(self, name, slug):
        tag_id = len(self.tags) + 1
        self.tags[slug] = {"id": tag_id, "name": name}
        return tag_id

    async def link_event_tag(self, event_id, tag_id):
        self.links.add((event_id, tag_id))

    async def market_exists(self, condition_id):
        return condition_id in self.markets

    async def create_market(self, condition_id, **fields):
        self.markets[condition_id] = fields

    async def create_outcomes(self, outcomes):
        self.outcomes.extend(outcomes)

    async def is_sync_running(self):
        return self.running

    async def update_sync_status(self, status, **kwargs):
        self.statuses.append((status, kwargs))


class FakeSubgraph:
    """Serves pre-built pages and records the cursor of every request"""

    def __init__(self, pages, page_size=200):
        self.pages = list(pages)
        self.page_size = page_size
        self.requests = []

    async def fetch_conditions_page(self, after):
        self.requests.append(after)
        if not self.pages:
            return []
        return self.pages.pop(0)


class FakeMetadata:

    def __init__(self, documents=None, on_fetch=None, images=None):
        self.documents = documents or {}
        self.on_fetch = on_fetch
        self.images = images or {}

    async def fetch_metadata(self, arweave_hash):
        if self.on_fetch:
            self.on_fetch(arweave_hash)
        raw = self.documents.get(arweave_hash)
        if raw is None:
            raise MetadataError(f"Failed to fetch metadata for {arweave_hash}")
        return MarketMetadata.model_validate(raw), raw

    async def download(self, content_hash):
        return self.images.get(content_hash)


class FakeStorage:

    def __init__(self):
        self.uploads = []

    def upload_asset(self, storage_path, file_data, content_type=None):
        self.uploads.append(storage_path)
        return storage_path


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_condition(cid, ts, creator=ALLOWED, arweave_hash=None):
    return SubgraphCondition.model_validate({
        "id": cid,
        "oracle": "0xoracle",
        "questionId": f"q-{cid}",
        "resolved": False,
        "arweaveHash": arweave_hash or f"hash-{cid}",
        "creator": creator,
        "creationTimestamp": ts,
    })


def make_document(slug, event_slug="election-2028", tags=None, outcomes=None, icon=None):
    return {
        "name": f"Market {slug}",
        "slug": slug,
        "short_title": slug.upper(),
        "icon": icon,
        "event": {
            "slug": event_slug,
            "title": "Election 2028",
            "tags": tags or [],
            "rules": "Resolves YES if ...",
        },
        "outcomes": outcomes if outcomes is not None else [
            {"outcome": "Yes", "token_id": f"{slug}-yes"},
            {"outcome": "No"},
        ],
    }


def make_service(pages, repository=None, documents=None, page_size=200, **kwargs):
    repository = repository or FakeRepository()
    subgraph = FakeSubgraph(pages, page_size=page_size)
    metadata = kwargs.pop("metadata", None) or FakeMetadata(documents or {})
    service = MarketSyncService(
        repository=repository,
        subgraph=subgraph,
        metadata=metadata,
        storage=kwargs.pop("storage", None) or FakeStorage(),
        allowed_creators=[ALLOWED],
        **kwargs
    )
    return service, repository, subgraph


# ============================================================================
# Cursor
# ============================================================================

def test_advance_cursor_moves_forward_on_every_examined_record():
    cursor = SyncCursor(100, "0xa")
    nxt = SyncCursor(100, "0xb")
    for outcome in (
        RecordOutcome.PROCESSED,
        RecordOutcome.FAILED,
        RecordOutcome.SKIPPED_CREATOR,
        RecordOutcome.SKIPPED_EXISTING,
        RecordOutcome.SKIPPED_MISSING_CREATOR,
    ):
        assert advance_cursor(cursor, nxt, outcome) == nxt


def test_advance_cursor_holds_on_invalid_timestamp_and_deferral():
    cursor = SyncCursor(100, "0xa")
    nxt = SyncCursor(200, "0xb")
    assert advance_cursor(cursor, nxt, RecordOutcome.SKIPPED_INVALID_TIMESTAMP) == cursor
    assert advance_cursor(cursor, nxt, RecordOutcome.DEFERRED) == cursor
    assert advance_cursor(cursor, None, RecordOutcome.PROCESSED) == cursor


def test_advance_cursor_never_moves_backwards():
    cursor = SyncCursor(200, "0xb")
    assert advance_cursor(cursor, SyncCursor(100, "0xz"), RecordOutcome.PROCESSED) == cursor
    assert advance_cursor(cursor, SyncCursor(200, "0xa"), RecordOutcome.PROCESSED) == cursor
    assert advance_cursor(None, SyncCursor(1, "0x1"), RecordOutcome.PROCESSED) == SyncCursor(1, "0x1")


def test_cursor_ordering_uses_timestamp_then_id():
    assert SyncCursor(100, "0xb") > SyncCursor(100, "0xa")
    assert SyncCursor(101, "0x0") > SyncCursor(100, "0xf")
    assert SyncCursor(100, "0xa").is_after(None)


def test_tag_slug():
    assert tag_slug("Politics & Elections") == "politics-elections"
    assert tag_slug("US") == "us"
    assert len(tag_slug("x" * 300)) == 100


# ============================================================================
# sync_markets
# ============================================================================

@pytest.mark.asyncio
async def test_three_record_page_lands_cursor_on_last_record():
    """Processed, foreign creator, already stored: all three advance the cursor"""
    page = [
        make_condition("0x01", "1000"),
        make_condition("0x02", "1001", creator=STRANGER),
        make_condition("0x03", "1002"),
    ]
    repository = FakeRepository(existing_ids=["0x03"])
    service, repository, subgraph = make_service(
        [page], repository=repository, documents={"hash-0x01": make_document("m1")}
    )

    stats = await service.sync_markets()

    assert stats.fetched_count == 3
    assert stats.processed_count == 1
    assert stats.skipped_creator_count == 1
    assert stats.skipped_existing_count == 1
    assert stats.errors == []
    assert stats.cursor == SyncCursor(1002, "0x03")
    assert list(repository.markets) == ["0x01"]
    # Short page ends pagination after one request
    assert subgraph.requests == [None]


@pytest.mark.asyncio
async def test_rerun_over_existing_page_creates_nothing():
    page = [make_condition("0x01", "1000"), make_condition("0x02", "1001")]
    repository = FakeRepository(existing_ids=["0x01", "0x02"])
    service, repository, _ = make_service([page], repository=repository)

    stats = await service.sync_markets()

    assert stats.skipped_existing_count == 2
    assert stats.processed_count == 0
    assert repository.events == {}
    assert repository.markets == {}
    assert repository.outcomes == []


@pytest.mark.asyncio
async def test_resumes_from_stored_cursor():
    last = SyncCursor(500, "0xlast")
    service, _, subgraph = make_service([[]], repository=FakeRepository(last_cursor=last))

    stats = await service.sync_markets()

    assert subgraph.requests == [last]
    assert stats.fetched_count == 0
    assert stats.cursor == last


@pytest.mark.asyncio
async def test_failed_record_is_reported_and_cursor_moves_past_it():
    page = [make_condition("0x01", "1000"), make_condition("0x02", "1001")]
    service, repository, _ = make_service(
        [page], documents={"hash-0x02": make_document("m2")}
    )

    stats = await service.sync_markets()

    assert stats.processed_count == 1
    assert len(stats.errors) == 1
    assert stats.errors[0].to_dict()["conditionId"] == "0x01"
    assert "hash-0x01" in stats.errors[0].error
    assert stats.cursor == SyncCursor(1001, "0x02")
    assert list(repository.markets) == ["0x02"]


@pytest.mark.asyncio
async def test_invalid_timestamp_is_skipped_without_moving_cursor():
    page = [make_condition("0x01", "1000"), make_condition("0x02", "not-a-number")]
    service, repository, _ = make_service(
        [page], documents={"hash-0x01": make_document("m1")}
    )

    stats = await service.sync_markets()

    assert stats.processed_count == 1
    assert stats.errors == []
    assert stats.cursor == SyncCursor(1000, "0x01")
    assert "0x02" not in repository.conditions


@pytest.mark.asyncio
async def test_paginates_with_cursor_of_previous_page():
    first = [make_condition("0x01", "1000", creator=STRANGER), make_condition("0x02", "1001", creator=STRANGER)]
    second = [make_condition("0x03", "1002", creator=STRANGER)]
    service, _, subgraph = make_service([first, second], page_size=2)

    stats = await service.sync_markets()

    assert subgraph.requests == [None, SyncCursor(1001, "0x02")]
    assert stats.fetched_count == 3
    assert stats.skipped_creator_count == 3
    assert stats.cursor == SyncCursor(1002, "0x03")


@pytest.mark.asyncio
async def test_full_page_without_progress_stops_pagination():
    page = [make_condition("0x01", None), make_condition("0x02", "abc")]
    service, _, subgraph = make_service([page, page], page_size=2)

    stats = await service.sync_markets()

    assert len(subgraph.requests) == 1
    assert stats.cursor is None


@pytest.mark.asyncio
async def test_time_budget_defers_remaining_records():
    clock = FakeClock()

    def slow_fetch(_hash):
        clock.now += 300

    page = [make_condition("0x01", "1000"), make_condition("0x02", "1001")]
    metadata = FakeMetadata(
        {"hash-0x01": make_document("m1"), "hash-0x02": make_document("m2")},
        on_fetch=slow_fetch,
    )
    service, repository, _ = make_service(
        [page], metadata=metadata, time_limit_seconds=250, clock=clock
    )

    stats = await service.sync_markets()

    assert stats.time_limit_reached is True
    assert stats.processed_count == 1
    assert stats.cursor == SyncCursor(1000, "0x01")
    assert list(repository.markets) == ["0x01"]


@pytest.mark.asyncio
async def test_materializes_event_tags_market_and_outcomes():
    page = [make_condition("0x01", "1000"), make_condition("0x02", "1001")]
    documents = {
        "hash-0x01": make_document("m1", tags=["Politics & Elections", 5, "US"], icon="img-1"),
        "hash-0x02": make_document("m2", tags=["US"]),
    }
    storage = FakeStorage()
    metadata = FakeMetadata(documents, images={"img-1": b"\xff\xd8"})
    service, repository, _ = make_service([page], metadata=metadata, storage=storage)

    stats = await service.sync_markets()

    assert stats.processed_count == 2
    # Both markets share one event
    assert list(repository.events) == ["election-2028"]
    assert set(repository.tags) == {"politics-elections", "us"}
    assert len(repository.links) == 2

    market = repository.markets["0x01"]
    assert market["title"] == "Market m1"
    assert market["icon_url"] == "markets/icons/m1.jpg"
    assert market["metadata"]["slug"] == "m1"
    assert market["created_at"] == datetime.fromtimestamp(1000, tz=timezone.utc)
    assert storage.uploads == ["markets/icons/m1.jpg"]

    tokens = [o["token_id"] for o in repository.outcomes if o["condition_id"] == "0x01"]
    assert tokens == ["m1-yes", "0x011"]


@pytest.mark.asyncio
async def test_image_failure_leaves_icon_empty():
    class BrokenStorage(FakeStorage):
        def upload_asset(self, storage_path, file_data, content_type=None):
            raise RuntimeError("bucket offline")

    page = [make_condition("0x01", "1000")]
    metadata = FakeMetadata({"hash-0x01": make_document("m1", icon="img-1")}, images={"img-1": b"x"})
    service, repository, _ = make_service([page], metadata=metadata, storage=BrokenStorage())

    stats = await service.sync_markets()

    assert stats.processed_count == 1
    assert repository.markets["0x01"]["icon_url"] is None


# ============================================================================
# run() lock + status
# ============================================================================

@pytest.mark.asyncio
async def test_run_skips_when_lock_is_held():
    repository = FakeRepository(running=True)
    service, repository, subgraph = make_service([], repository=repository)

    result = await service.run()

    assert result.skipped is True
    assert subgraph.requests == []
    assert repository.statuses == []


@pytest.mark.asyncio
async def test_run_records_running_then_completed():
    page = [make_condition("0x01", "1000")]
    service, repository, _ = make_service([page], documents={"hash-0x01": make_document("m1")})

    result = await service.run()

    assert result.skipped is False
    assert result.stats.processed_count == 1
    assert [status for status, _ in repository.statuses] == ["running", "completed"]
    assert repository.statuses[-1][1] == {"error_message": None, "total_processed": 1}


@pytest.mark.asyncio
async def test_run_records_error_and_reraises():
    service, repository, subgraph = make_service([])
    subgraph.fetch_conditions_page = AsyncMock(side_effect=SubgraphError("PnL subgraph query error: boom"))

    with pytest.raises(SubgraphError):
        await service.run()

    assert repository.statuses[-1] == ("error", {"error_message": "PnL subgraph query error: boom"})


# ============================================================================
# Stale lock detection
# ============================================================================

@pytest.mark.asyncio
async def test_recent_running_row_blocks_but_stale_one_does_not():
    from crud import sync_status as sync_status_crud

    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    fresh = SimpleNamespace(status="running", updated_at=now - timedelta(minutes=5))
    stale = SimpleNamespace(status="running", updated_at=now - timedelta(minutes=20))
    done = SimpleNamespace(status="completed", updated_at=now)

    for row, expected in ((fresh, True), (stale, False), (done, False), (None, False)):
        with patch.object(sync_status_crud, "get_sync_status", AsyncMock(return_value=row)):
            running = await sync_status_crud.is_sync_running(
                None, "market_sync", "pnl", STALE_LOCK_AFTER, now=now
            )
        assert running is expected


# ============================================================================
# Malformed input and repeated runs
# ============================================================================

class KeysetSubgraph:
    """Serves a fixed dataset in (timestamp, id) order strictly after the cursor"""

    def __init__(self, conditions, page_size=200):
        self.conditions = sorted(conditions, key=lambda c: (c.parsed_timestamp(), c.id))
        self.page_size = page_size
        self.requests = []

    async def fetch_conditions_page(self, after):
        self.requests.append(after)
        newer = [
            c for c in self.conditions
            if after is None or SyncCursor(c.parsed_timestamp(), c.id) > after
        ]
        return newer[:self.page_size]


class ResumingRepository(FakeRepository):
    """Derives the resume cursor from the newest stored market, like the real repository"""

    async def get_last_processed_cursor(self):
        if not self.markets:
            return None
        return max(
            SyncCursor(int(fields["created_at"].timestamp()), condition_id)
            for condition_id, fields in self.markets.items()
        )


@pytest.mark.asyncio
async def test_bad_timestamp_then_foreign_creator_then_new_market():
    page = [
        make_condition("0x01", "abc"),
        make_condition("0x02", "1001", creator=STRANGER),
        make_condition("0x03", "1002"),
    ]
    service, repository, _ = make_service([page], documents={"hash-0x03": make_document("m3")})

    stats = await service.sync_markets()

    assert stats.fetched_count == 3
    assert stats.processed_count == 1
    assert stats.skipped_creator_count == 1
    assert stats.skipped_existing_count == 0
    assert stats.errors == []
    assert stats.cursor == SyncCursor(1002, "0x03")
    assert list(repository.markets) == ["0x03"]
    assert "0x01" not in repository.conditions


@pytest.mark.asyncio
async def test_second_run_resumes_after_first_and_cursor_only_moves_forward():
    dataset = [make_condition(f"0x0{i}", str(1000 + i)) for i in range(1, 6)]
    documents = {f"hash-0x0{i}": make_document(f"m{i}") for i in range(1, 6)}
    repository = ResumingRepository()

    first_subgraph = KeysetSubgraph(dataset[:3], page_size=2)
    first = MarketSyncService(
        repository=repository, subgraph=first_subgraph, metadata=FakeMetadata(documents),
        storage=FakeStorage(), allowed_creators=[ALLOWED],
    )
    first_stats = await first.sync_markets()

    assert first_stats.processed_count == 3
    assert first_stats.cursor == SyncCursor(1003, "0x03")

    # New records appear upstream between runs
    second_subgraph = KeysetSubgraph(dataset, page_size=2)
    second = MarketSyncService(
        repository=repository, subgraph=second_subgraph, metadata=FakeMetadata(documents),
        storage=FakeStorage(), allowed_creators=[ALLOWED],
    )
    second_stats = await second.sync_markets()

    assert second_subgraph.requests[0] == first_stats.cursor
    assert second_stats.processed_count == 2
    assert second_stats.skipped_existing_count == 0
    assert second_stats.cursor == SyncCursor(1005, "0x05")
    assert second_stats.cursor > first_stats.cursor
    # Each request starts strictly after the previous one
    requested = [c for c in second_subgraph.requests if c is not None]
    assert requested == sorted(set(requested))
    assert sorted(repository.markets) == ["0x01", "0x02", "0x03", "0x04", "0x05"]


@pytest.mark.asyncio
async def test_malformed_subgraph_record_fails_alone():
    raw_page = [
        {"id": "0x01", "oracle": "0xoracle", "questionId": "q-0x01", "resolved": False,
         "arweaveHash": "hash-0x01", "creator": ALLOWED, "creationTimestamp": "1000"},
        {"id": "0x02", "oracle": "0xoracle", "questionId": "q-0x02", "resolved": None,
         "arweaveHash": "hash-0x02", "creator": ALLOWED, "creationTimestamp": "1001"},
        {"oracle": "0xoracle", "creator": ALLOWED, "creationTimestamp": "1002"},
        {"id": "0x04", "oracle": "0xoracle", "questionId": "q-0x04", "resolved": True,
         "arweaveHash": "hash-0x04", "creator": ALLOWED, "creationTimestamp": "1003"},
    ]
    page = [normalize_condition(raw) for raw in raw_page]
    documents = {"hash-0x01": make_document("m1"), "hash-0x04": make_document("m4")}
    service, repository, _ = make_service([page], documents=documents)

    stats = await service.sync_markets()

    assert stats.fetched_count == 4
    assert stats.processed_count == 2
    assert sorted(repository.markets) == ["0x01", "0x04"]
    assert [e.condition_id for e in stats.errors] == ["0x02", "unknown"]
    assert all(e.error.startswith("Invalid subgraph record") for e in stats.errors)
    assert stats.cursor == SyncCursor(1003, "0x04")


@pytest.mark.asyncio
async def test_malformed_record_with_id_moves_cursor_past_it():
    raw = {"id": "0x02", "resolved": None, "creator": ALLOWED, "creationTimestamp": "1001"}
    service, repository, _ = make_service([[normalize_condition(raw)]])

    stats = await service.sync_markets()

    assert stats.cursor == SyncCursor(1001, "0x02")
    assert repository.conditions == {}


@pytest.mark.asyncio
async def test_tag_link_failure_does_not_fail_the_market():
    class FlakyLinkRepository(FakeRepository):
        async def link_event_tag(self, event_id, tag_id):
            if tag_id == 1:
                raise RuntimeError("event_tags insert failed")
            await super().link_event_tag(event_id, tag_id)

    repository = FlakyLinkRepository()
    documents = {"hash-0x01": make_document("m1", tags=["Politics", "US"])}
    service, repository, _ = make_service(
        [[make_condition("0x01", "1000")]], repository=repository, documents=documents
    )

    stats = await service.sync_markets()

    assert stats.errors == []
    assert stats.processed_count == 1
    assert list(repository.markets) == ["0x01"]
    assert repository.links == {("event-1", 2)}
    assert set(repository.tags) == {"politics", "us"}
