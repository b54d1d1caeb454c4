"""
habitsync - client-side data synchronization for a realtime habit tracker.

Keeps one user's habits, habit logs and todos consistent across optimistic
local writes, realtime push events and a short-lived read cache.
"""

from .cache import ReadCache
from .connectivity import ConnectivityMonitor, ReachabilityProbe
from .events import ChangeEvent, DeleteEvent, InsertEvent, UpdateEvent, parse_change_event
from .ledger import PendingUpdateLedger
from .reconcile import Reconciler
from .registry import SubscriptionRegistry
from .service import SyncService, create_service
from .tracker import HabitTracker, TrackerSnapshot
from .transport import PushTransport, SubscriptionKey, SupabaseRealtimeTransport
from .types import (
    HABIT_LOGS,
    HABITS,
    TODOS,
    EntityClass,
    EventFormatError,
    HabitSyncError,
    MutationResult,
    Operation,
    PendingUpdate,
    SubscriptionError,
)

try:
    from importlib.metadata import version

    __version__ = version("habitsync")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    # Core singletons
    "SyncService",
    "create_service",
    "SubscriptionRegistry",
    "PendingUpdateLedger",
    "ReadCache",
    "ConnectivityMonitor",
    "ReachabilityProbe",
    # Reconciliation
    "Reconciler",
    "HabitTracker",
    "TrackerSnapshot",
    # Transport
    "PushTransport",
    "SubscriptionKey",
    "SupabaseRealtimeTransport",
    # Events
    "ChangeEvent",
    "InsertEvent",
    "UpdateEvent",
    "DeleteEvent",
    "parse_change_event",
    # Types
    "EntityClass",
    "HABITS",
    "HABIT_LOGS",
    "TODOS",
    "Operation",
    "PendingUpdate",
    "MutationResult",
    # Errors
    "HabitSyncError",
    "SubscriptionError",
    "EventFormatError",
]
