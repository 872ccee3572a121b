"""
Run one incremental market sync from the command line

Usage:
    python scripts/sync_markets.py
    python scripts/sync_markets.py --time-limit 60
"""
import sys
import asyncio
import argparse
from pathlib import Path

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from services.market_sync import MarketSyncService, SYNC_TIME_LIMIT_SECONDS
from utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


async def run_sync(time_limit: float) -> int:
    """Run the sync once and print a summary; returns the process exit code"""
    service = MarketSyncService(time_limit_seconds=time_limit)

    try:
        result = await service.run()
    except Exception as e:
        print(f"❌ Sync failed: {e}")
        return 1

    if result.skipped:
        print("🚫 Sync already running, nothing to do")
        return 0

    stats = result.stats
    print("=" * 60)
    print(f"Fetched:          {stats.fetched_count}")
    print(f"Processed:        {stats.processed_count}")
    print(f"Skipped existing: {stats.skipped_existing_count}")
    print(f"Skipped creators: {stats.skipped_creator_count}")
    print(f"Errors:           {len(stats.errors)}")
    print(f"Time limit hit:   {stats.time_limit_reached}")
    if stats.cursor:
        print(f"Cursor:           {stats.cursor.condition_id} @ {stats.cursor.creation_timestamp}")
    print("=" * 60)

    for error in stats.errors:
        print(f"  ❌ {error.condition_id}: {error.error}")

    return 0


def main():
    parser = argparse.ArgumentParser(description="Sync markets from the PnL subgraph")
    parser.add_argument(
        "--time-limit",
        type=float,
        default=SYNC_TIME_LIMIT_SECONDS,
        help=f"Seconds before the sync stops picking up new records (default {SYNC_TIME_LIMIT_SECONDS})"
    )
    args = parser.parse_args()

    configure_logging()
    sys.exit(asyncio.run(run_sync(args.time_limit)))


if __name__ == "__main__":
    main()
