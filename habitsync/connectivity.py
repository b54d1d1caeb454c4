"""Connectivity monitoring.

ConnectivityMonitor holds the single process-wide "reachable" flag and
notifies observers when it flips. ReachabilityProbe is the signal source: it
periodically asks the store's health endpoint whether it can be reached and
feeds the answer into the monitor.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

StatusCallback = Callable[[bool], None]


class ConnectivityMonitor:
    """Tracks network reachability and notifies observers on transitions.

    Args:
        initial: Reachability at construction time.
    """

    def __init__(self, initial: bool = True):
        self._online = bool(initial)
        self._callbacks: Dict[int, StatusCallback] = {}
        self._next_token = 0

    def get_status(self) -> bool:
        return self._online

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback(status)``; returns a function that detaches it."""
        token = self._next_token
        self._next_token += 1
        self._callbacks[token] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return unsubscribe

    def set_status(self, online: bool) -> None:
        """Platform signal handler: record reachability and notify on change."""
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")

        for token, callback in list(self._callbacks.items()):
            if token not in self._callbacks:
                continue
            try:
                callback(online)
            except Exception:
                logger.exception("Connection status callback error")

    def went_online(self) -> None:
        self.set_status(True)

    def went_offline(self) -> None:
        self.set_status(False)


class ReachabilityProbe:
    """Polls the store's health endpoint and feeds a ConnectivityMonitor.

    Any HTTP response below 500 counts as reachable; transport errors and
    server errors count as unreachable.

    Args:
        monitor: The monitor to update.
        health_url: Full URL of the health endpoint.
        api_key: Sent as the ``apikey`` header, as Supabase expects.
        interval: Seconds between probes.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one).
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        health_url: str,
        api_key: Optional[str] = None,
        interval: float = 15.0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.monitor = monitor
        self.health_url = health_url
        self.interval = interval
        self.timeout = timeout
        self._headers = {"apikey": api_key} if api_key else {}
        self._client = client
        self._owns_client = client is None
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> bool:
        """Probe once, update the monitor, and return the result."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._client.get(self.health_url, headers=self._headers, timeout=self.timeout)
            reachable = response.status_code < 500
            if not reachable:
                logger.debug(f"Health check returned status {response.status_code}")
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            reachable = False

        self.monitor.set_status(reachable)
        return reachable

    async def run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
