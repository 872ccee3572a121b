"""
Market sync API routes
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from auth.cron import require_cron_secret
from models.sync import SyncEventsResponse
from services.market_sync import market_sync_service
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/events", dependencies=[Depends(require_cron_secret)])
async def sync_events():
    """
    Run one incremental market sync from the PnL subgraph.

    Returns:
        401 without the cron secret, 409 if another run is active,
        500 on an unexpected failure, otherwise the sync statistics
    """
    try:
        result = await market_sync_service.run()
    except Exception as e:
        logger.error(f"Market sync failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e) or type(e).__name__}
        )

    if result.skipped:
        return JSONResponse(
            status_code=409,
            content={"success": False, "message": "Sync already running", "skipped": True}
        )

    stats = result.stats
    if stats.fetched_count == 0:
        logger.info("📭 No markets fetched from PnL subgraph")
        return {
            "success": True,
            "message": "No new markets to process",
            "processed": 0,
            "fetched": 0,
        }

    return SyncEventsResponse.from_stats(stats).model_dump(by_alias=True)
