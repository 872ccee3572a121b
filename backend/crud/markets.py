"""
Async CRUD operations for conditions, events, markets, outcomes and tags

All writes used by the market sync are existence-check-then-insert or
upserts keyed on the natural identifier, so replaying them is harmless.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.db import Condition, Event, Market, Outcome, Tag, EventTag


# ============================================================================
# Conditions
# ============================================================================

async def get_existing_condition_ids(
    db: AsyncSession,
    condition_ids: Iterable[str],
    chunk_size: int = 200
) -> Set[str]:
    """Return the subset of condition_ids already stored, querying in chunks"""
    unique_ids = list(dict.fromkeys(condition_ids))
    existing: Set[str] = set()

    for start in range(0, len(unique_ids), chunk_size):
        chunk = unique_ids[start:start + chunk_size]
        result = await db.execute(select(Condition.id).where(Condition.id.in_(chunk)))
        existing.update(result.scalars().all())

    return existing


async def upsert_condition(
    db: AsyncSession,
    condition_id: str,
    oracle: str,
    question_id: str,
    resolved: bool,
    arweave_hash: str,
    creator: str,
    created_at: datetime
) -> None:
    """Insert a condition or refresh its mutable columns"""
    values = {
        "id": condition_id,
        "oracle": oracle,
        "question_id": question_id,
        "resolved": resolved,
        "arweave_hash": arweave_hash,
        "creator": creator,
        "created_at": created_at,
    }
    stmt = insert(Condition).values(**values).on_conflict_do_update(
        index_elements=["id"],
        set_={k: v for k, v in values.items() if k != "id"},
    )
    await db.execute(stmt)
    await db.commit()


# ============================================================================
# Events + tags
# ============================================================================

async def get_event_id_by_slug(db: AsyncSession, slug: str) -> Optional[str]:
    result = await db.execute(select(Event.id).where(Event.slug == slug))
    return result.scalar_one_or_none()


async def create_event(
    db: AsyncSession,
    slug: str,
    title: str,
    creator: Optional[str],
    icon_url: Optional[str],
    show_market_icons: bool,
    rules: Optional[str]
) -> str:
    """Create an event and return its id"""
    event = Event(
        slug=slug,
        title=title,
        creator=creator,
        icon_url=icon_url,
        show_market_icons=show_market_icons,
        rules=rules,
    )
    db.add(event)
    await db.commit()
    await db.refresh(event)
    return event.id


async def get_tag_id_by_slug(db: AsyncSession, slug: str) -> Optional[int]:
    result = await db.execute(select(Tag.id).where(Tag.slug == slug))
    return result.scalar_one_or_none()


async def create_tag(db: AsyncSession, name: str, slug: str) -> int:
    tag = Tag(name=name, slug=slug)
    db.add(tag)
    await db.commit()
    await db.refresh(tag)
    return tag.id


async def link_event_tag(db: AsyncSession, event_id: str, tag_id: int) -> None:
    """Attach a tag to an event; existing links are left alone"""
    stmt = insert(EventTag).values(event_id=event_id, tag_id=tag_id).on_conflict_do_nothing(
        index_elements=["event_id", "tag_id"]
    )
    await db.execute(stmt)
    await db.commit()


# ============================================================================
# Markets + outcomes
# ============================================================================

async def market_exists(db: AsyncSession, condition_id: str) -> bool:
    result = await db.execute(select(Market.condition_id).where(Market.condition_id == condition_id))
    return result.scalar_one_or_none() is not None


async def get_last_created_market(db: AsyncSession) -> Optional[Tuple[str, datetime]]:
    """(condition_id, created_at) of the most recently created market"""
    result = await db.execute(
        select(Market.condition_id, Market.created_at)
        .order_by(Market.created_at.desc(), Market.condition_id.desc())
        .limit(1)
    )
    row = result.first()
    if not row:
        return None
    return row[0], row[1]


async def create_market(
    db: AsyncSession,
    condition_id: str,
    event_id: str,
    title: str,
    slug: str,
    short_title: Optional[str],
    icon_url: Optional[str],
    is_resolved: bool,
    metadata: Dict[str, Any],
    created_at: datetime
) -> None:
    market = Market(
        condition_id=condition_id,
        event_id=event_id,
        title=title,
        slug=slug,
        short_title=short_title,
        icon_url=icon_url,
        is_resolved=is_resolved,
        market_metadata=metadata,
        created_at=created_at,
    )
    db.add(market)
    await db.commit()


async def create_outcomes(db: AsyncSession, outcomes: List[Dict[str, Any]]) -> None:
    """Bulk insert outcome rows (dicts with condition_id, outcome_text, outcome_index, token_id)"""
    if not outcomes:
        return
    db.add_all([Outcome(**outcome) for outcome in outcomes])
    await db.commit()
