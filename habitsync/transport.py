"""Upstream push transport.

The registry talks to the transport through a two-call protocol: ``open``
establishes one upstream subscription for a key and ``close`` tears it down.
SupabaseRealtimeTransport implements it on Supabase Realtime channels
(``postgres_changes``).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Set, runtime_checkable

from supabase import AsyncClient

from .types import SubscriptionError

logger = logging.getLogger(__name__)

PayloadHandler = Callable[[Any], None]

# Channel states that mean the subscription is not (or no longer) live
_FAILED_STATES = frozenset({"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"})


@dataclass(frozen=True)
class SubscriptionKey:
    """(table, filter) pair identifying one logical upstream channel."""

    table: str
    filter: Optional[str] = None

    @property
    def channel_name(self) -> str:
        return f"realtime:{self.table}-{self.filter or 'all'}"

    def __str__(self) -> str:
        return self.channel_name


@runtime_checkable
class PushTransport(Protocol):
    """What the subscription registry needs from a push transport."""

    async def open(self, key: SubscriptionKey, on_payload: PayloadHandler) -> Any:
        """Establish one upstream subscription; return an opaque handle.

        Raises:
            SubscriptionError: If the subscription cannot be established.
        """
        ...

    def close(self, handle: Any) -> None:
        """Tear down the subscription behind ``handle``. Must not block."""
        ...


def owner_filter(owner_id: str, column: str = "user_id") -> str:
    """Build a realtime equality filter such as ``user_id=eq.<owner>``."""
    return f"{column}=eq.{owner_id}"


class SupabaseRealtimeTransport:
    """Push transport backed by Supabase Realtime.

    Args:
        client: An async Supabase client (realtime requires the async client).
        schema: Postgres schema to listen on.
        subscribe_timeout: Seconds to wait for the channel to report SUBSCRIBED.
    """

    def __init__(self, client: AsyncClient, schema: str = "public", subscribe_timeout: float = 10.0):
        self._client = client
        self.schema = schema
        self.subscribe_timeout = subscribe_timeout
        self._closing: Set[asyncio.Task] = set()

    async def open(self, key: SubscriptionKey, on_payload: PayloadHandler) -> Any:
        channel = self._client.channel(key.channel_name)
        options = {"event": "*", "schema": self.schema, "table": key.table, "callback": on_payload}
        if key.filter:
            options["filter"] = key.filter
        channel.on_postgres_changes(**options)

        status: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_status(state: Any, error: Optional[Exception] = None) -> None:
            name = str(getattr(state, "value", state)).upper()
            if status.done():
                if name in _FAILED_STATES:
                    logger.warning(f"Realtime channel {key} reported {name} after subscribing: {error}")
                return
            if name == "SUBSCRIBED":
                status.set_result(None)
            elif name in _FAILED_STATES:
                status.set_exception(SubscriptionError(key, f"{name}: {error}" if error else name))

        try:
            await channel.subscribe(on_status)
            await asyncio.wait_for(status, timeout=self.subscribe_timeout)
        except asyncio.TimeoutError:
            self._remove(channel)
            raise SubscriptionError(key, f"no confirmation within {self.subscribe_timeout}s") from None
        except SubscriptionError:
            self._remove(channel)
            raise
        except Exception as e:
            self._remove(channel)
            raise SubscriptionError(key, str(e)) from e

        logger.debug(f"Realtime channel {key} subscribed")
        return channel

    def close(self, handle: Any) -> None:
        self._remove(handle)

    def _remove(self, channel: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; realtime channel left for client shutdown")
            return
        task = loop.create_task(self._client.remove_channel(channel))
        self._closing.add(task)
        task.add_done_callback(self._on_removed)

    def _on_removed(self, task: asyncio.Task) -> None:
        self._closing.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Failed to remove realtime channel: {error}")

    async def drain(self) -> None:
        """Wait for pending channel removals to finish."""
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
