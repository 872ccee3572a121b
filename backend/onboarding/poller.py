"""
Proxy wallet status poller

Keeps the cached proxy wallet fields in the user store in line with the
backend until the wallet reports `deployed`:

- success, not deployed  -> poll again after PROXY_POLL_INTERVAL_SECONDS
- success, deployed      -> stop
- failure (any kind)     -> retry after PROXY_RETRY_DELAY_SECONDS, forever

Only one fetch is in flight at a time; after stop() nothing is written to
the store and nothing else is scheduled.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from utils.logger import get_logger

from .client import PlatformClient
from .store import UserStore

logger = get_logger(__name__)

PROXY_POLL_INTERVAL_SECONDS = 6.0
PROXY_RETRY_DELAY_SECONDS = 10.0


class ProxyWalletPoller:

    def __init__(
        self,
        store: UserStore,
        client: PlatformClient,
        poll_interval: float = PROXY_POLL_INTERVAL_SECONDS,
        retry_delay: float = PROXY_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.store = store
        self.client = client
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stopped = True
        self.fetch_count = 0

    def needs_sync(self) -> bool:
        """True while a signed-in user has no deployed proxy wallet"""
        user = self.store.get_state()
        if not user or not user.get("id"):
            return False
        return not user.get("proxy_wallet_address") or user.get("proxy_wallet_status") != "deployed"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> Optional[float]:
        """
        Fetch the proxy wallet once and merge it into the store

        Returns:
            Seconds until the next poll, or None when polling should end
        """
        self.fetch_count += 1
        try:
            data: Optional[Dict[str, Any]] = await self.client.get_proxy_details()
        except Exception as e:
            logger.debug(f"Proxy wallet poll failed: {e}")
            data = None

        if data is not None and not isinstance(data, dict):
            logger.debug(f"Proxy wallet poll returned a non-object payload: {type(data).__name__}")
            data = None

        if self._stopped:
            return None

        if data is None:
            return self.retry_delay if self.needs_sync() else None

        self.store.apply_proxy_wallet_update(data)

        if data.get("proxy_wallet_status") == "deployed" or not self.needs_sync():
            logger.info("✅ Proxy wallet deployed, polling stopped")
            return None
        return self.poll_interval

    async def _run(self):
        while not self._stopped:
            delay = await self.poll_once()
            if delay is None or self._stopped:
                break
            await self._sleep(delay)

    def start(self) -> Optional[asyncio.Task]:
        """Begin polling if needed; a running poller is left alone"""
        if self.is_running:
            return self._task
        if not self.needs_sync():
            return None

        self._stopped = False
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        """Cancel polling; in-flight results are discarded"""
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
