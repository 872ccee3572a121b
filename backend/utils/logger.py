"""
Logging setup shared by the API, the sync job and the onboarding client

Usage:
    from utils.logger import get_logger

    logger = get_logger(__name__)
    logger.info("✅ Processed market: 0xabc")

Set LOG_LEVEL to change verbosity (default INFO).
"""
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers, capped at WARNING
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "hpack",
    "asyncpg",
    "sqlalchemy.engine",
)

_configured = False


def configure_logging(level: Optional[str] = None):
    """
    Configure the root logger once per process

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Falls back to LOG_LEVEL, then INFO.
    """
    global _configured

    if _configured:
        return

    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
        force=True
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    logging.getLogger(__name__).debug(f"Logging configured at {level} level")


def get_logger(name: str) -> logging.Logger:
    """Module logger; configures logging on first use"""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


def log_api_call(logger: logging.Logger, method: str, url: str, status: int, duration_ms: float):
    """Outbound HTTP call (subgraph, gateway, platform API)"""
    logger.debug(
        f"{method} {url} -> {status} ({duration_ms:.0f}ms)",
        extra={
            "method": method,
            "url": url,
            "status": status,
            "duration_ms": round(duration_ms, 2),
            "type": "api_call"
        }
    )


def log_db_query(logger: logging.Logger, operation: str, table: str, duration_ms: float, count: Optional[int] = None):
    """Database round trip made by the sync job"""
    rows = f" ({count} rows)" if count is not None else ""
    logger.debug(
        f"DB {operation} {table}{rows} ({duration_ms:.0f}ms)",
        extra={
            "operation": operation,
            "table": table,
            "duration_ms": round(duration_ms, 2),
            "count": count,
            "type": "db_query"
        }
    )


def log_sync_summary(
    logger: logging.Logger,
    fetched: int,
    processed: int,
    skipped_existing: int,
    skipped_creators: int,
    errors: int,
    time_limit_reached: bool,
    duration_ms: float
):
    """Final statistics of one market sync run"""
    marker = "⏹️" if time_limit_reached else "🎉"
    logger.info(
        f"{marker} Market sync: {processed} processed, {fetched} fetched, "
        f"{skipped_existing} existing, {skipped_creators} filtered, {errors} errors ({duration_ms:.0f}ms)",
        extra={
            "fetched": fetched,
            "processed": processed,
            "skipped_existing": skipped_existing,
            "skipped_creators": skipped_creators,
            "errors": errors,
            "time_limit_reached": time_limit_reached,
            "duration_ms": round(duration_ms, 2),
            "type": "market_sync"
        }
    )
