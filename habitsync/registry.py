"""Subscription registry: one upstream subscription per key, many observers.

Every (table, filter) key maps to a single upstream channel shared by all
local observers of that key. Incoming payloads are parsed once into typed
change events and fanned out to each observer in isolation; the channel is
torn down as soon as the last observer detaches.
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .events import ChangeEvent, parse_change_event
from .transport import PushTransport, SubscriptionKey
from .types import EntityClass, EventFormatError, SubscriptionError

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]


def _consume_result(future: asyncio.Future) -> None:
    # Waiters that were cancelled never see the failure; mark it retrieved
    if not future.cancelled():
        future.exception()


class _Channel:
    """Bookkeeping for one subscription key."""

    __slots__ = ("key", "observers", "handle", "ready", "closed")

    def __init__(self, key: SubscriptionKey):
        self.key = key
        # Insertion-ordered; delivery order across observers is not part of the contract
        self.observers: Dict[int, EventCallback] = {}
        self.handle: Any = None
        self.ready: Optional[asyncio.Future] = None
        self.closed = False


class SubscriptionRegistry:
    """Shares upstream push subscriptions between local observers.

    Args:
        transport: The push transport used to open and close upstream channels.
    """

    def __init__(self, transport: PushTransport):
        self._transport = transport
        self._channels: Dict[SubscriptionKey, _Channel] = {}
        self._tokens = itertools.count()

    async def subscribe(
        self,
        entity_class: Union[EntityClass, str],
        filter: Optional[str],
        on_event: EventCallback,
    ) -> Callable[[], None]:
        """Register ``on_event`` for changes to ``entity_class`` matching ``filter``.

        Opens the upstream subscription if this is the first observer of the
        key. Concurrent first subscribers share one establishment.

        Returns:
            A detach function. Calling it removes exactly this registration and,
            if it was the last one, tears the upstream subscription down.

        Raises:
            SubscriptionError: If the upstream subscription cannot be established.
        """
        table = entity_class.table if isinstance(entity_class, EntityClass) else entity_class
        key = SubscriptionKey(table=table, filter=filter or None)

        channel = self._channels.get(key)
        if channel is None:
            channel = _Channel(key)
            self._channels[key] = channel
            channel.ready = asyncio.ensure_future(self._establish(channel))
            channel.ready.add_done_callback(_consume_result)
            logger.debug(f"Opening realtime channel {key}")

        token = next(self._tokens)
        channel.observers[token] = on_event
        try:
            await asyncio.shield(channel.ready)
        except BaseException:
            channel.observers.pop(token, None)
            self._release(channel)
            raise

        return self._detach_fn(channel, token)

    async def _establish(self, channel: _Channel) -> None:
        def on_payload(payload: Any) -> None:
            self._dispatch(channel, payload)

        try:
            handle = await self._transport.open(channel.key, on_payload)
        except Exception as e:
            if self._channels.get(channel.key) is channel:
                del self._channels[channel.key]
            channel.closed = True
            logger.warning(f"Realtime subscription to {channel.key} failed: {e}")
            if isinstance(e, SubscriptionError):
                raise
            raise SubscriptionError(channel.key, str(e)) from e

        channel.handle = handle
        if not channel.observers:
            # Every waiting subscriber gave up before the channel came up
            self._teardown(channel)

    def _dispatch(self, channel: _Channel, payload: Any) -> None:
        if channel.closed:
            return
        try:
            event = parse_change_event(payload, default_table=channel.key.table)
        except EventFormatError as e:
            logger.warning(f"Dropping malformed event on {channel.key}: {e}")
            return

        for token, callback in list(channel.observers.items()):
            # Skip observers detached while this event was being delivered
            if token not in channel.observers:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception(f"Realtime callback error on {channel.key}")

    def _detach_fn(self, channel: _Channel, token: int) -> Callable[[], None]:
        def unsubscribe() -> None:
            if channel.observers.pop(token, None) is None:
                return
            self._release(channel)

        return unsubscribe

    def _release(self, channel: _Channel) -> None:
        if channel.observers or channel.closed:
            return
        if channel.ready is not None and not channel.ready.done():
            # _establish tears down once the channel is up
            return
        self._teardown(channel)

    def _teardown(self, channel: _Channel) -> None:
        channel.closed = True
        channel.observers.clear()
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        if channel.handle is not None:
            logger.debug(f"Closing realtime channel {channel.key}")
            try:
                self._transport.close(channel.handle)
            except Exception as e:
                logger.warning(f"Error closing realtime channel {channel.key}: {e}")
            channel.handle = None

    def close_all(self) -> None:
        """Tear down every upstream subscription and forget all observers."""
        for channel in list(self._channels.values()):
            if channel.ready is not None and not channel.ready.done():
                channel.ready.cancel()
            self._teardown(channel)
        self._channels.clear()

    def active_keys(self) -> List[SubscriptionKey]:
        return list(self._channels)

    def observer_count(self, key: SubscriptionKey) -> int:
        channel = self._channels.get(key)
        return len(channel.observers) if channel else 0
