"""
Models for the Forkast backend
"""
from .sync import (
    SubgraphCondition,
    OutcomeMetadata,
    EventMetadata,
    MarketMetadata,
    SyncCursor,
    SyncErrorDetail,
    SyncStats,
    SyncRunResult,
    SyncEventsResponse
)

__all__ = [
    'SubgraphCondition',
    'OutcomeMetadata',
    'EventMetadata',
    'MarketMetadata',
    'SyncCursor',
    'SyncErrorDetail',
    'SyncStats',
    'SyncRunResult',
    'SyncEventsResponse',
]
