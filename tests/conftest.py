"""
Pytest fixtures and test configuration for habitsync tests.
"""

import asyncio
import itertools
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from habitsync.ledger import PendingUpdateLedger
from habitsync.service import SyncService
from habitsync.transport import SubscriptionKey


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory push transport that records open/close calls.

    Set ``gate`` to hold ``open`` until the event is set, and ``fail_with``
    to make ``open`` raise.
    """

    def __init__(self):
        self.open_calls: List[SubscriptionKey] = []
        self.closed: List[str] = []
        self.handlers: Dict[SubscriptionKey, Callable[[Any], None]] = {}
        self.live: Dict[str, SubscriptionKey] = {}
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None
        self._ids = itertools.count(1)

    async def open(self, key: SubscriptionKey, on_payload: Callable[[Any], None]) -> str:
        self.open_calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        handle = f"handle-{next(self._ids)}"
        self.handlers[key] = on_payload
        self.live[handle] = key
        return handle

    def close(self, handle: str) -> None:
        self.closed.append(handle)
        key = self.live.pop(handle)
        self.handlers.pop(key, None)

    def emit(self, key: SubscriptionKey, payload: Any) -> None:
        self.handlers[key](payload)


async def _settle(rounds: int = 5) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger(clock):
    return PendingUpdateLedger(clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def service(transport, clock):
    """A SyncService wired to the fake transport and manual clock."""
    return SyncService(transport, clock=clock)


@pytest.fixture
def mock_db():
    """Stand-in for the async Supabase client; remote calls are patched per test."""
    return MagicMock()


@pytest.fixture
def settle():
    """Coroutine function that yields to the event loop a few times."""
    return _settle
