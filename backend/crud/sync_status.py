"""
Async CRUD operations for the sync_status table
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.db import SyncStatus

logger = logging.getLogger(__name__)

# Sentinel for "leave the column as it is"
_UNSET = object()


async def get_sync_status(
    db: AsyncSession,
    service_name: str,
    subgraph_name: str
) -> Optional[SyncStatus]:
    """Get the status row for a service/subgraph pair"""
    result = await db.execute(
        select(SyncStatus).where(
            SyncStatus.service_name == service_name,
            SyncStatus.subgraph_name == subgraph_name,
        )
    )
    return result.scalar_one_or_none()


async def is_sync_running(
    db: AsyncSession,
    service_name: str,
    subgraph_name: str,
    stale_after: timedelta,
    now: Optional[datetime] = None
) -> bool:
    """
    True if another run holds the advisory lock

    A 'running' row older than stale_after is treated as a crashed run and
    does not block.
    """
    row = await get_sync_status(db, service_name, subgraph_name)
    if not row or row.status != "running":
        return False

    now = now or datetime.now(timezone.utc)
    updated_at = row.updated_at
    if updated_at is None:
        return False
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)

    return now - updated_at < stale_after


async def update_sync_status(
    db: AsyncSession,
    service_name: str,
    subgraph_name: str,
    status: str,
    error_message=_UNSET,
    total_processed: Optional[int] = None
) -> bool:
    """
    Upsert the status row. Returns False (and logs) if the write failed.

    error_message is only written when passed explicitly (None clears it).
    """
    values = {
        "service_name": service_name,
        "subgraph_name": subgraph_name,
        "status": status,
        "updated_at": func.now(),
    }
    if error_message is not _UNSET:
        values["error_message"] = error_message
    if total_processed is not None:
        values["total_processed"] = total_processed

    update_values = {k: v for k, v in values.items() if k not in ("service_name", "subgraph_name")}

    stmt = insert(SyncStatus).values(**values).on_conflict_do_update(
        index_elements=["service_name", "subgraph_name"],
        set_=update_values,
    )

    try:
        await db.execute(stmt)
        await db.commit()
        return True
    except Exception as e:
        await db.rollback()
        logger.error(f"Failed to update sync status to {status}: {e}")
        return False
