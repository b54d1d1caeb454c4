"""Reconciliation of optimistic mutations, push events and fetched data.

Reconciler keeps one base collection per entity class. The base only ever
holds state the store has confirmed (fetched rows, push events, confirmed
write results); optimistic changes live in the ledger and are overlaid by
``view()``. Rolling back a failed mutation is therefore just discarding its
pending update.

Conflict handling:
- A push event for a record with a pending update counts as confirmation
  only if the event agrees with what the update wrote. An update event that
  disagrees is a concurrent write from elsewhere: the base takes it, but the
  local pending change stays overlaid until its own write settles.
- A pending add with a provisional id is confirmed by an insert event with
  the same identity, or with every non-identity field of the payload equal.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .events import ChangeEvent, DeleteEvent
from .ledger import PendingUpdateLedger
from .types import (
    HABIT_LOGS,
    HABITS,
    TODOS,
    EntityClass,
    MutationResult,
    Operation,
    PendingUpdate,
    Record,
    make_pending_key,
)

logger = logging.getLogger(__name__)

RemoteCall = Callable[[], Awaitable[Optional[Record]]]


def _payload_agrees(entity: EntityClass, data: Record, record: Record) -> bool:
    """True if every non-identity field in ``data`` has the same value in ``record``."""
    fields = [f for f in data if f not in entity.identity_fields]
    if not fields:
        return False
    return all(f in record and record[f] == data[f] for f in fields)


class Reconciler:
    """Base collections plus the rules for merging the ledger and push events.

    Args:
        ledger: The pending-update ledger shared with the rest of the core.
        entities: Entity classes this reconciler keeps collections for.
    """

    def __init__(self, ledger: PendingUpdateLedger, entities: Iterable[EntityClass] = (HABITS, HABIT_LOGS, TODOS)):
        self.ledger = ledger
        self._entities: Dict[str, EntityClass] = {e.table: e for e in entities}
        self._base: Dict[str, List[Record]] = {e.name: [] for e in self._entities.values()}
        self._normalizers: Dict[str, Callable[[Record], Record]] = {}
        self._scopes: Dict[str, Callable[[Record], bool]] = {}

    # === Configuration ===

    def set_normalizer(self, entity: EntityClass, fn: Callable[[Record], Record]) -> None:
        """Transform applied to every confirmed record before it enters the base."""
        self._normalizers[entity.name] = fn

    def set_scope(self, entity: EntityClass, predicate: Optional[Callable[[Record], bool]]) -> None:
        """Restrict which pushed records belong in the base (e.g. one month of logs)."""
        if predicate is None:
            self._scopes.pop(entity.name, None)
        else:
            self._scopes[entity.name] = predicate

    def _normalize(self, entity: EntityClass, record: Record) -> Record:
        fn = self._normalizers.get(entity.name)
        return fn(dict(record)) if fn else dict(record)

    def _in_scope(self, entity: EntityClass, record: Record) -> bool:
        predicate = self._scopes.get(entity.name)
        return predicate(record) if predicate else True

    # === Collections ===

    def replace_base(self, entity: EntityClass, records: Iterable[Record]) -> None:
        """Install a freshly fetched (or cached) collection as the base."""
        self._base[entity.name] = [self._normalize(entity, r) for r in records]

    def base(self, entity: EntityClass) -> List[Record]:
        return list(self._base[entity.name])

    def view(self, entity: EntityClass) -> List[Record]:
        """The base collection with pending updates overlaid."""
        return self.ledger.project(self._base[entity.name], entity)

    def find(self, entity: EntityClass, identity: Tuple[Any, ...]) -> Optional[Record]:
        """First record in the current view with the given identity."""
        return next((r for r in self.view(entity) if entity.matches(r, identity)), None)

    def clear(self) -> None:
        for name in self._base:
            self._base[name] = []

    def _upsert(self, entity: EntityClass, record: Record) -> None:
        identity = entity.identity_of(record)
        base = self._base[entity.name]
        for i, existing in enumerate(base):
            if entity.matches(existing, identity):
                base[i] = record
                return
        base.append(record)

    def _discard(self, entity: EntityClass, identity: Optional[Tuple[Any, ...]]) -> None:
        self._base[entity.name] = [r for r in self._base[entity.name] if not entity.matches(r, identity)]

    # === Mutations ===

    def begin(
        self,
        entity: EntityClass,
        operation: Operation,
        data: Optional[Record] = None,
        target: Optional[Tuple[Any, ...]] = None,
        key: Optional[str] = None,
    ) -> PendingUpdate:
        """Record a pending update; the optimistic preview is visible through ``view()``."""
        update = PendingUpdate(entity=entity, operation=operation, data=dict(data or {}), target=target)
        if key is None:
            if update.target is None:
                raise ValueError("A pending add without an identity needs an explicit key")
            key = make_pending_key(entity, update.operation, update.target)
        return self.ledger.put(key, update)

    def _retract(self, update: PendingUpdate) -> None:
        # A newer put under the same key belongs to a later mutation
        if update.key is not None and self.ledger.get(update.key) is update:
            self.ledger.remove(update.key)

    def confirm(self, update: PendingUpdate, confirmed: Optional[Record] = None) -> Optional[Record]:
        """Write the store-confirmed result of ``update`` into the base collection."""
        entity = update.entity
        if update.operation == Operation.DELETE:
            self._discard(entity, update.target)
            return None

        if update.operation == Operation.ADD:
            record = self._normalize(entity, confirmed or update.data)
            self._upsert(entity, record)
            return record

        if confirmed:
            record = self._normalize(entity, confirmed)
            self._upsert(entity, record)
            return record
        existing = next((r for r in self._base[entity.name] if entity.matches(r, update.target)), None)
        if existing is None:
            return None
        record = {**existing, **update.data}
        self._upsert(entity, record)
        return record

    async def mutate(
        self,
        entity: EntityClass,
        operation: Operation,
        remote_call: RemoteCall,
        data: Optional[Record] = None,
        target: Optional[Tuple[Any, ...]] = None,
        key: Optional[str] = None,
    ) -> MutationResult:
        """Run one optimistic mutation end to end.

        Registers the pending update, awaits ``remote_call`` and then either
        confirms (server payload becomes the record of truth) or rolls back
        (pending update discarded, view returns to its pre-mutation shape).

        Returns:
            MutationResult describing the outcome. Remote failures are
            reported through the result, never raised.
        """
        pending = self.begin(entity, operation, data=data, target=target, key=key)
        try:
            confirmed = await remote_call()
        except asyncio.CancelledError:
            self._retract(pending)
            raise
        except Exception as e:
            self._retract(pending)
            logger.warning(f"{entity.name} {pending.operation.value} failed, rolled back: {e}")
            return MutationResult.rolled_back(pending, e)

        self._retract(pending)
        record = self.confirm(pending, confirmed)
        return MutationResult.confirmed(pending, record)

    # === Push Events ===

    def apply_event(self, event: ChangeEvent) -> None:
        """Apply one push event to the base and retract what it confirms."""
        entity = self._entities.get(event.table)
        if entity is None:
            logger.debug(f"Ignoring event for untracked table {event.table}")
            return

        is_delete = isinstance(event, DeleteEvent)
        record = dict(event.record) if is_delete else self._normalize(entity, event.record)
        identity = entity.identity_of(record)
        if identity is None:
            logger.warning(f"Ignoring {event.event_type} on {event.table} without identity fields")
            return

        self._retract_confirmed(entity, record, identity, is_delete)

        if is_delete or not self._in_scope(entity, record):
            self._discard(entity, identity)
        else:
            self._upsert(entity, record)

    def _retract_confirmed(
        self, entity: EntityClass, record: Record, identity: Tuple[Any, ...], is_delete: bool
    ) -> None:
        for update in self.ledger.pending_for(entity):
            if is_delete:
                if update.operation != Operation.ADD and update.target == identity:
                    self._retract(update)
                continue

            if update.operation == Operation.DELETE:
                continue
            if update.operation == Operation.ADD:
                if update.target == identity or _payload_agrees(entity, update.data, record):
                    self._retract(update)
                    # One insert confirms at most one provisional add
                    return
                continue
            if update.target == identity:
                if all(record.get(f) == v for f, v in update.data.items()):
                    self._retract(update)
                else:
                    logger.debug(f"Concurrent write to {entity.name} {identity}; keeping local change")
