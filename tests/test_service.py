"""Tests for the sync service container and its housekeeping."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from habitsync.config import Settings
from habitsync.connectivity import ReachabilityProbe
from habitsync.service import SyncService, create_service
from habitsync.transport import SubscriptionKey, SupabaseRealtimeTransport
from habitsync.types import HABITS, TODOS, Operation, PendingUpdate


class TestSyncService:
    @pytest.mark.asyncio
    async def test_subscribe_uses_owner_filter(self, service, transport):
        await service.subscribe_to_entity_changes(HABITS, "u1", lambda e: None)
        await service.subscribe_to_entity_changes(TODOS, None, lambda e: None)

        assert transport.open_calls == [SubscriptionKey("habits", "user_id=eq.u1"), SubscriptionKey("todos")]

    def test_settings_drive_defaults(self, transport):
        settings = Settings(
            _env_file=None,
            supabase_url="https://abc.supabase.co",
            cache_ttl_seconds=60,
            pending_max_age_seconds=5,
        )

        service = SyncService(transport, settings=settings)

        assert service.cache.ttl == 60
        assert service.ledger.max_age == 5

    def test_housekeep_sweeps_ledger_and_cache(self, service, clock):
        service.ledger.put("habit:update:1", PendingUpdate(HABITS, Operation.UPDATE, {"completed": True}, (1,)))
        service.cache.set("data-u1-2024-05", {})
        clock.advance(301)

        assert service.housekeep() == {"pending": 1, "cache": 1}
        assert len(service.ledger) == 0
        assert len(service.cache) == 0

    @pytest.mark.asyncio
    async def test_start_and_close(self, service, transport):
        service.housekeeping_interval = 0.01
        service.housekeep = MagicMock(return_value={"pending": 0, "cache": 0})
        await service.subscribe_to_entity_changes(HABITS, "u1", lambda e: None)

        service.start()
        await asyncio.sleep(0.05)
        await service.close()

        assert service.housekeep.call_count >= 2
        assert transport.closed == ["handle-1"]
        assert service.registry.active_keys() == []

    @pytest.mark.asyncio
    async def test_close_stops_probe(self, transport):
        probe = MagicMock(spec=ReachabilityProbe)
        probe.stop = AsyncMock()
        service = SyncService(transport, probe=probe)

        service.start()
        await service.close()

        probe.start.assert_called_once_with()
        probe.stop.assert_awaited_once_with()


class TestCreateService:
    @pytest.mark.asyncio
    async def test_wires_supabase_client(self):
        settings = Settings(
            _env_file=None,
            supabase_url="https://abc.supabase.co",
            supabase_publishable_key="pk",
            schema_name="app",
        )
        client = MagicMock()

        with patch("habitsync.service.acreate_client", new_callable=AsyncMock) as mock_create, patch.object(
            ReachabilityProbe, "check", new_callable=AsyncMock
        ) as mock_check:
            mock_create.return_value = client
            service, returned = await create_service(settings)

        assert returned is client
        mock_create.assert_awaited_once_with("https://abc.supabase.co", "pk")
        mock_check.assert_awaited_once()
        assert isinstance(service.transport, SupabaseRealtimeTransport)
        assert service.transport.schema == "app"
        assert service.probe.health_url == "https://abc.supabase.co/auth/v1/health"
        assert service.connectivity.get_status() is False
