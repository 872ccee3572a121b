"""
Authentication for scheduler-triggered endpoints

The scheduler sends: Authorization: Bearer <CRON_SECRET>
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)


def is_cron_authorized(authorization: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Check a raw Authorization header against the cron secret

    Falls back to Config.CRON_SECRET when no secret is given. Always False
    when no secret is configured.
    """
    expected_secret = secret if secret is not None else Config.CRON_SECRET
    if not expected_secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {expected_secret}".encode())


async def require_cron_secret(
    authorization: Optional[str] = Header(None, description="Bearer <CRON_SECRET>")
) -> None:
    """FastAPI dependency rejecting requests without the cron bearer secret"""
    if not is_cron_authorized(authorization):
        logger.warning("Rejected unauthenticated cron request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthenticated."
        )
