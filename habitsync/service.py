"""The sync service: one explicitly constructed home for the core's state.

SyncService owns the subscription registry, pending-update ledger, read
cache and connectivity monitor. Build one per process (or one per test) and
hand it to whatever needs the core; nothing here is a module-level global.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple, Union

from supabase import AsyncClient, acreate_client

from .cache import DEFAULT_TTL_SECONDS, ReadCache
from .config import Settings, get_settings
from .connectivity import ConnectivityMonitor, ReachabilityProbe
from .ledger import DEFAULT_MAX_AGE, PendingUpdateLedger
from .registry import EventCallback, SubscriptionRegistry
from .transport import PushTransport, SupabaseRealtimeTransport, owner_filter
from .types import EntityClass

logger = logging.getLogger(__name__)


class SyncService:
    """Container for the core singletons plus periodic housekeeping.

    Args:
        transport: Push transport used by the subscription registry.
        settings: Optional settings; TTL and max-age defaults come from here.
        clock: Time source shared by the ledger and the cache.
        connectivity: Monitor to use (a fresh one reporting online otherwise).
        probe: Optional reachability probe started and stopped with the service.
    """

    def __init__(
        self,
        transport: PushTransport,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], float]] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        probe: Optional[ReachabilityProbe] = None,
    ):
        cache_ttl = settings.cache_ttl_seconds if settings else DEFAULT_TTL_SECONDS
        max_age = settings.pending_max_age_seconds if settings else DEFAULT_MAX_AGE
        self.housekeeping_interval = settings.housekeeping_interval_seconds if settings else 10.0

        self.transport = transport
        self.registry = SubscriptionRegistry(transport)
        self.ledger = PendingUpdateLedger(clock=clock, max_age=max_age)
        self.cache = ReadCache(ttl_seconds=cache_ttl, clock=clock)
        self.connectivity = connectivity or ConnectivityMonitor()
        self.probe = probe
        self._housekeeping: Optional[asyncio.Task] = None

    async def subscribe_to_entity_changes(
        self,
        entity_class: Union[EntityClass, str],
        owner_id: Optional[str],
        callback: EventCallback,
    ) -> Callable[[], None]:
        """Subscribe to changes of one entity class owned by ``owner_id``.

        Returns the registry's detach function.
        """
        filter_expr = owner_filter(owner_id) if owner_id else None
        return await self.registry.subscribe(entity_class, filter_expr, callback)

    # === Housekeeping ===

    def housekeep(self) -> Dict[str, int]:
        """Sweep stale pending updates and expired cache entries once."""
        swept = {"pending": self.ledger.sweep(), "cache": self.cache.sweep()}
        if swept["cache"]:
            logger.debug(f"Housekeeping removed {swept['cache']} expired cache entries")
        return swept

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.housekeeping_interval)
            self.housekeep()

    def start_housekeeping(self) -> None:
        """Sweep the ledger and cache every ``housekeeping_interval`` seconds."""
        if self._housekeeping is None or self._housekeeping.done():
            self._housekeeping = asyncio.get_running_loop().create_task(self._housekeeping_loop())

    def start(self) -> None:
        """Start periodic housekeeping (and the probe, if any)."""
        self.start_housekeeping()
        if self.probe is not None:
            self.probe.start()

    async def close(self) -> None:
        """Stop background tasks and tear down every upstream subscription."""
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            try:
                await self._housekeeping
            except asyncio.CancelledError:
                pass
            self._housekeeping = None
        if self.probe is not None:
            await self.probe.stop()
        self.registry.close_all()
        drain = getattr(self.transport, "drain", None)
        if drain is not None:
            await drain()


async def create_service(settings: Optional[Settings] = None) -> Tuple[SyncService, AsyncClient]:
    """Connect to Supabase and build a service wired to it.

    Runs one reachability probe so the connectivity flag starts out accurate.

    Returns:
        The service and the async Supabase client (for remote store calls).
    """
    settings = settings or get_settings()
    client = await acreate_client(settings.supabase_url, settings.api_key)
    transport = SupabaseRealtimeTransport(
        client, schema=settings.schema_name, subscribe_timeout=settings.subscribe_timeout_seconds
    )
    monitor = ConnectivityMonitor(initial=False)
    probe = ReachabilityProbe(
        monitor,
        settings.health_url,
        api_key=settings.api_key,
        interval=settings.connectivity_probe_interval_seconds,
        timeout=settings.connectivity_timeout_seconds,
    )
    await probe.check()
    service = SyncService(transport, settings=settings, connectivity=monitor, probe=probe)
    return service, client
