"""Tests for the Supabase realtime transport adapter."""

from enum import Enum
from unittest.mock import AsyncMock, MagicMock

import pytest

from habitsync.transport import PushTransport, SubscriptionKey, SupabaseRealtimeTransport, owner_filter
from habitsync.types import SubscriptionError

KEY = SubscriptionKey("habits", "user_id=eq.u1")


class _States(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"


def _make_client(state=_States.SUBSCRIBED, error=None):
    """Mock async Supabase client whose channel reports ``state`` on subscribe."""
    client = MagicMock()
    channel = MagicMock()
    client.channel.return_value = channel

    async def subscribe(callback):
        if state is not None:
            callback(state, error)
        return channel

    channel.subscribe = AsyncMock(side_effect=subscribe)
    client.remove_channel = AsyncMock()
    return client, channel


def _handler(payload):
    pass


class TestSubscriptionKey:
    def test_channel_name(self):
        assert KEY.channel_name == "realtime:habits-user_id=eq.u1"
        assert SubscriptionKey("todos").channel_name == "realtime:todos-all"

    def test_owner_filter(self):
        assert owner_filter("u1") == "user_id=eq.u1"


class TestSupabaseRealtimeTransport:
    def test_satisfies_protocol(self):
        client, _ = _make_client()
        assert isinstance(SupabaseRealtimeTransport(client), PushTransport)

    @pytest.mark.asyncio
    async def test_open_registers_postgres_changes(self):
        client, channel = _make_client()
        transport = SupabaseRealtimeTransport(client)

        handle = await transport.open(KEY, _handler)

        assert handle is channel
        client.channel.assert_called_once_with("realtime:habits-user_id=eq.u1")
        channel.on_postgres_changes.assert_called_once_with(
            event="*", schema="public", table="habits", filter="user_id=eq.u1", callback=_handler
        )

    @pytest.mark.asyncio
    async def test_open_without_filter(self):
        client, channel = _make_client(state="SUBSCRIBED")
        transport = SupabaseRealtimeTransport(client, schema="app")

        await transport.open(SubscriptionKey("todos"), _handler)

        kwargs = channel.on_postgres_changes.call_args.kwargs
        assert "filter" not in kwargs
        assert kwargs["schema"] == "app"

    @pytest.mark.asyncio
    async def test_channel_error_raises_and_removes_channel(self):
        client, channel = _make_client(state=_States.CHANNEL_ERROR, error=RuntimeError("rls denied"))
        transport = SupabaseRealtimeTransport(client)

        with pytest.raises(SubscriptionError) as exc_info:
            await transport.open(KEY, _handler)
        await transport.drain()

        assert "CHANNEL_ERROR" in str(exc_info.value)
        client.remove_channel.assert_awaited_once_with(channel)

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        client, channel = _make_client(state=None)
        transport = SupabaseRealtimeTransport(client, subscribe_timeout=0.01)

        with pytest.raises(SubscriptionError, match="no confirmation"):
            await transport.open(KEY, _handler)
        await transport.drain()

        client.remove_channel.assert_awaited_once_with(channel)

    @pytest.mark.asyncio
    async def test_subscribe_exception_wrapped(self):
        client, channel = _make_client()
        channel.subscribe = AsyncMock(side_effect=ConnectionError("socket refused"))
        transport = SupabaseRealtimeTransport(client)

        with pytest.raises(SubscriptionError, match="socket refused"):
            await transport.open(KEY, _handler)

    @pytest.mark.asyncio
    async def test_close_removes_channel(self):
        client, channel = _make_client()
        transport = SupabaseRealtimeTransport(client)
        handle = await transport.open(KEY, _handler)

        transport.close(handle)
        await transport.drain()

        client.remove_channel.assert_awaited_once_with(channel)

    @pytest.mark.asyncio
    async def test_failed_removal_is_logged(self, caplog):
        client, channel = _make_client()
        client.remove_channel = AsyncMock(side_effect=RuntimeError("already gone"))
        transport = SupabaseRealtimeTransport(client)

        transport.close(channel)
        await transport.drain()

        assert "Failed to remove realtime channel" in caplog.text
