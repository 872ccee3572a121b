"""
HTTP client for the platform endpoints used during trading onboarding
"""
import time
from typing import Any, Dict, Optional

import httpx

from config import Config
from utils.logger import get_logger, log_api_call

from .errors import PlatformAPIError

logger = get_logger(__name__)


class PlatformClient:
    """
    Async wrapper over the platform's proxy wallet, trading auth, Safe and
    session endpoints

    Authentication rides on whatever cookies/headers the caller puts on the
    underlying httpx client.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ):
        self.base_url = (base_url or Config.PLATFORM_API_URL).rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or Config.HTTP_TIMEOUT_SECONDS,
        )

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        start_time = time.time()
        response = await self._client.request(method, path, **kwargs)
        log_api_call(logger, method, path, response.status_code, (time.time() - start_time) * 1000)

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not isinstance(payload, dict):
            payload = {"data": payload}

        if response.status_code >= 400 or payload.get("error"):
            message = payload.get("error") or response.reason_phrase or "Request failed"
            raise PlatformAPIError(str(message), status_code=response.status_code)

        return payload

    async def get_proxy_details(self) -> Optional[Dict[str, Any]]:
        """
        Current proxy wallet fields for the signed-in user

        Returns:
            The proxy fields, or None when the endpoint answered non-OK
        """
        response = await self._client.get("/api/user/proxy")
        if response.status_code >= 400:
            logger.debug(f"Proxy wallet lookup returned {response.status_code}")
            return None
        return response.json()

    async def save_proxy_wallet_signature(self, signature: str) -> Dict[str, Any]:
        """Submit the create-proxy signature; returns the new proxy fields"""
        payload = await self._request("POST", "/api/user/proxy", json={"signature": signature})
        data = payload.get("data")
        if not data:
            raise PlatformAPIError("Proxy wallet response did not include data")
        return data

    async def generate_trading_auth(self, signature: str, timestamp: str, nonce: str) -> Dict[str, Any]:
        """Exchange the trading-auth signature for relayer/CLOB credentials"""
        payload = await self._request(
            "POST",
            "/api/trading-auth",
            json={"signature": signature, "timestamp": timestamp, "nonce": nonce},
        )
        data = payload.get("data")
        if not data:
            raise PlatformAPIError("Trading auth response did not include data")
        return data

    async def get_safe_nonce(self) -> str:
        payload = await self._request("GET", "/api/safe/nonce")
        nonce = payload.get("nonce")
        if nonce is None or nonce == "":
            raise PlatformAPIError("Safe nonce unavailable")
        return str(nonce)

    async def submit_safe_transaction(self, request_payload: Dict[str, Any]) -> Dict[str, Any]:
        """Relay a signed Safe transaction; the response may carry `approvals`"""
        return await self._request("POST", "/api/safe/transactions", json=request_payload)

    async def get_session(self) -> Optional[Dict[str, Any]]:
        """Session user, or None when signed out"""
        payload = await self._request("GET", "/api/auth/get-session")
        return (payload or {}).get("user")
