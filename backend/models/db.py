"""
SQLAlchemy database models
"""
import uuid
from sqlalchemy import (
    Column, String, DateTime, Text, Boolean, Integer, SmallInteger, Numeric,
    ForeignKey, UniqueConstraint, PrimaryKeyConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Condition(Base):
    """
    On-chain condition ingested from the PnL subgraph

    Immutable once created; the primary key is the on-chain condition id.
    """
    __tablename__ = "conditions"

    id = Column(String, primary_key=True, index=True)
    oracle = Column(String, nullable=False)
    question_id = Column(String, nullable=False)
    resolved = Column(Boolean, default=False)
    arweave_hash = Column(String, nullable=True)
    creator = Column(String(42), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Condition(id='{self.id}', creator='{self.creator}')>"


class Event(Base):
    """Logical grouping of markets, created once per unique slug"""
    __tablename__ = "events"

    id = Column(String, primary_key=True, default=_new_id)
    slug = Column(String, nullable=False, unique=True, index=True)
    title = Column(Text, nullable=False)
    creator = Column(String(42), nullable=True)
    icon_url = Column(Text, nullable=True)
    show_market_icons = Column(Boolean, default=True)
    status = Column(String, nullable=False, default="active")
    rules = Column(Text, nullable=True)
    active_markets_count = Column(Integer, default=0)
    total_markets_count = Column(Integer, default=0)
    end_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Event(id='{self.id}', slug='{self.slug}')>"


class Market(Base):
    """A tradable question, 1:1 with a condition"""
    __tablename__ = "markets"

    condition_id = Column(
        String,
        ForeignKey("conditions.id", ondelete="CASCADE", onupdate="CASCADE"),
        primary_key=True,
    )
    event_id = Column(
        String,
        ForeignKey("events.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(Text, nullable=False)
    slug = Column(String, nullable=False)
    short_title = Column(Text, nullable=True)
    icon_url = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_resolved = Column(Boolean, default=False, nullable=False)
    # Full metadata document as fetched from the gateway
    market_metadata = Column("metadata", JSONB, nullable=True)
    current_volume_24h = Column(Numeric(20, 6), default=0, nullable=False)
    total_volume = Column(Numeric(20, 6), default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Market(condition_id='{self.condition_id}', slug='{self.slug}')>"


class Outcome(Base):
    """One possible resolution of a market, ordered by outcome_index"""
    __tablename__ = "outcomes"

    id = Column(String, primary_key=True, default=_new_id)
    condition_id = Column(
        String,
        ForeignKey("conditions.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    outcome_text = Column(Text, nullable=False)
    outcome_index = Column(SmallInteger, nullable=False)
    token_id = Column(String, nullable=False, unique=True)
    is_winning_outcome = Column(Boolean, default=False)
    payout_value = Column(Numeric(20, 6), nullable=True)
    current_price = Column(Numeric(8, 4), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Tag(Base):
    """Event category, de-duplicated by slug"""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    slug = Column(String, nullable=False, unique=True, index=True)
    is_main_category = Column(Boolean, default=False)
    is_hidden = Column(Boolean, default=False, nullable=False)
    display_order = Column(SmallInteger, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class EventTag(Base):
    """Many-to-many link between events and tags"""
    __tablename__ = "event_tags"
    __table_args__ = (
        PrimaryKeyConstraint("event_id", "tag_id"),
    )

    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False)


class SyncStatus(Base):
    """
    Progress/lock row for a background sync service

    One row per (service_name, subgraph_name). A row in status 'running'
    with a recent updated_at acts as an advisory lock.
    """
    __tablename__ = "sync_status"
    __table_args__ = (
        UniqueConstraint("service_name", "subgraph_name", name="uq_sync_status_service_subgraph"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_name = Column(String, nullable=False)
    subgraph_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="idle")  # idle, running, completed, error
    error_message = Column(Text, nullable=True)
    total_processed = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<SyncStatus(service='{self.service_name}', subgraph='{self.subgraph_name}', status='{self.status}')>"
