"""
Market sync models

Pydantic models for the payloads the sync job consumes (subgraph conditions,
gateway metadata) and produces (the sync endpoint response), plus the
immutable cursor and stats values threaded through a run.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubgraphCondition(BaseModel):
    """A condition as returned by the PnL subgraph (after owner/creator normalization)"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    oracle: Optional[str] = None
    question_id: Optional[str] = Field(default=None, alias="questionId")
    resolved: bool = False
    arweave_hash: Optional[str] = Field(default=None, alias="arweaveHash")
    creator: Optional[str] = None
    owner: Optional[str] = None
    # Kept raw: the subgraph serializes BigInt as a string and it is validated per record
    creation_timestamp: Optional[Any] = Field(default=None, alias="creationTimestamp")
    # Set when the raw record failed validation; only id and timestamp are trustworthy then
    validation_error: Optional[str] = Field(default=None, exclude=True)

    def parsed_timestamp(self) -> Optional[int]:
        """creationTimestamp as unix seconds, or None if missing/unparseable"""
        value = self.creation_timestamp
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if number != number or number in (float("inf"), float("-inf")):
            return None
        return int(number)


class OutcomeMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    outcome: str
    token_id: Optional[str] = None


class EventMetadata(BaseModel):
    """Nested `event` object of a market's metadata document"""
    model_config = ConfigDict(extra="allow")

    slug: Optional[str] = None
    title: Optional[str] = None
    icon: Optional[str] = None
    rules: Optional[str] = None
    tags: List[Any] = Field(default_factory=list)
    show_market_icons: Optional[bool] = None


class MarketMetadata(BaseModel):
    """Off-chain metadata document stored on Irys/Arweave for a condition"""
    model_config = ConfigDict(extra="allow")

    name: str
    slug: str
    event: EventMetadata
    short_title: Optional[str] = None
    icon: Optional[str] = None
    outcomes: List[OutcomeMetadata] = Field(default_factory=list)


@dataclass(frozen=True, order=True)
class SyncCursor:
    """
    Resume point of the market sync

    Ordered by (creation_timestamp, condition_id), which is the keyset
    pagination order used against the subgraph.
    """
    creation_timestamp: int
    condition_id: str

    def is_after(self, other: Optional["SyncCursor"]) -> bool:
        return other is None or self > other


@dataclass(frozen=True)
class SyncErrorDetail:
    condition_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"conditionId": self.condition_id, "error": self.error}


@dataclass
class SyncStats:
    """Counters accumulated over one sync run"""
    fetched_count: int = 0
    processed_count: int = 0
    skipped_existing_count: int = 0
    skipped_creator_count: int = 0
    errors: List[SyncErrorDetail] = field(default_factory=list)
    time_limit_reached: bool = False
    cursor: Optional[SyncCursor] = None


@dataclass
class SyncRunResult:
    """Outcome of MarketSyncService.run()"""
    skipped: bool = False
    stats: Optional[SyncStats] = None


class SyncEventsResponse(BaseModel):
    """Response body of GET /api/sync/events"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    processed: int
    fetched: int
    skipped_existing: int = Field(alias="skippedExisting")
    skipped_creators: int = Field(alias="skippedCreators")
    errors: int
    error_details: List[Dict[str, str]] = Field(alias="errorDetails")
    time_limit_reached: bool = Field(alias="timeLimitReached")

    @classmethod
    def from_stats(cls, stats: SyncStats) -> "SyncEventsResponse":
        return cls(
            success=True,
            processed=stats.processed_count,
            fetched=stats.fetched_count,
            skipped_existing=stats.skipped_existing_count,
            skipped_creators=stats.skipped_creator_count,
            errors=len(stats.errors),
            error_details=[e.to_dict() for e in stats.errors],
            time_limit_reached=stats.time_limit_reached,
        )
