"""
CRUD operations for database models
"""
from . import markets, sync_status

__all__ = [
    'markets',
    'sync_status',
]
