"""
Shared types for habitsync.

The entity classes, pending-update records and mutation results live here.
They are the vocabulary shared by the ledger, the reconciler and the tracker:
the tracker creates a PendingUpdate, the ledger owns it, the reconciler
retracts it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

Record = Dict[str, Any]


# === Entity Classes ===


@dataclass(frozen=True)
class EntityClass:
    """A kind of record held in the remote store.

    ``identity_fields`` is the natural key used to match records. Habit logs
    have no surrogate id, so their identity is ``(habit_id, log_date)``.
    """

    name: str  # Ledger tag: "habit", "habitLog", "todo"
    table: str  # Remote table name
    identity_fields: Tuple[str, ...] = ("id",)

    def identity_of(self, record: Optional[Record]) -> Optional[Tuple[Any, ...]]:
        """Extract the identity tuple from a record, or None if incomplete."""
        if not record:
            return None
        try:
            values = tuple(record[f] for f in self.identity_fields)
        except KeyError:
            return None
        if any(v is None for v in values):
            return None
        return values

    def matches(self, record: Record, identity: Optional[Tuple[Any, ...]]) -> bool:
        return identity is not None and self.identity_of(record) == identity


HABITS = EntityClass(name="habit", table="habits")
HABIT_LOGS = EntityClass(name="habitLog", table="habit_logs", identity_fields=("habit_id", "log_date"))
TODOS = EntityClass(name="todo", table="todos")

ENTITY_CLASSES: Dict[str, EntityClass] = {e.table: e for e in (HABITS, HABIT_LOGS, TODOS)}


def entity_class_for_table(table: str) -> EntityClass:
    """Look up an entity class by remote table name."""
    try:
        return ENTITY_CLASSES[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table!r}") from None


# === Enums ===


class Operation(str, Enum):
    """Kind of optimistic mutation held in the ledger."""

    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


# === Errors ===


class HabitSyncError(Exception):
    """Base class for habitsync errors."""


class SubscriptionError(HabitSyncError):
    """Raised when an upstream push subscription cannot be established.

    Surfaced once to every caller awaiting that establishment; the registry
    never retries on its own.
    """

    def __init__(self, key: Any, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to subscribe to {key}: {reason}")


class EventFormatError(HabitSyncError, ValueError):
    """Raised when a push payload is not a recognizable change event."""


# === Pending Updates ===


@dataclass
class PendingUpdate:
    """One in-flight optimistic mutation.

    ``data`` is the payload for add (the full provisional record) and update
    (the fields being changed). ``target`` identifies the record an update or
    delete applies to; for an add it is derived from ``data``.
    """

    entity: EntityClass
    operation: Operation
    data: Record = field(default_factory=dict)
    target: Optional[Tuple[Any, ...]] = None
    key: Optional[str] = None  # Filled in by the ledger on put()
    created_at: float = 0.0  # Stamped by the ledger on put()

    def __post_init__(self):
        self.operation = Operation(self.operation)
        if self.target is None and self.operation == Operation.ADD:
            self.target = self.entity.identity_of(self.data)
        if self.operation != Operation.ADD and self.target is None:
            raise ValueError(f"{self.operation.value} pending update requires a target identity")


def make_pending_key(entity: EntityClass, operation: Operation, target: Tuple[Any, ...]) -> str:
    """Build the conventional ledger key: ``<entity>:<operation>:<identity>``."""
    ident = "-".join(str(v) for v in target)
    return f"{entity.name}:{Operation(operation).value}:{ident}"


# === Mutation Results ===


@dataclass
class MutationResult:
    """Outcome of an optimistic mutation.

    Either confirmed (``record`` holds the server's version of the record, or
    None for a delete) or rolled back (``error`` holds the remote failure and
    ``rollback`` the pending update that was discarded, so the caller can tell
    the user what was undone).
    """

    pending: PendingUpdate
    record: Optional[Record] = None
    error: Optional[BaseException] = None
    rollback: Optional[PendingUpdate] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def confirmed(cls, pending: PendingUpdate, record: Optional[Record]) -> "MutationResult":
        return cls(pending=pending, record=record)

    @classmethod
    def rolled_back(cls, pending: PendingUpdate, error: BaseException) -> "MutationResult":
        return cls(pending=pending, error=error, rollback=pending)
