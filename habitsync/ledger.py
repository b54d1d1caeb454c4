"""Pending-update ledger for optimistic mutations.

PendingUpdateLedger records mutations the user has made locally but the
store has not confirmed yet. Views are built by projecting the ledger over a
base collection, so an optimistic change stays visible between issuing a
write and receiving its confirmation.
"""

import logging
import time
from typing import Callable, Dict, Iterator, List, Optional

from .types import EntityClass, Operation, PendingUpdate, Record

logger = logging.getLogger(__name__)

# Pending updates older than this are assumed lost and swept (seconds)
DEFAULT_MAX_AGE = 30.0


class PendingUpdateLedger:
    """In-memory map of pending updates, keyed by a caller-chosen string.

    Args:
        clock: Returns the current time in seconds. Defaults to ``time.time``.
        max_age: Default staleness threshold used by ``sweep()``.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, max_age: float = DEFAULT_MAX_AGE):
        self._clock = clock or time.time
        self.max_age = max_age
        self._pending: Dict[str, PendingUpdate] = {}

    def put(self, key: str, update: PendingUpdate) -> PendingUpdate:
        """Store an update under ``key``, replacing any earlier one."""
        update.key = key
        update.created_at = self._clock()
        if key in self._pending:
            logger.debug(f"Pending update {key} replaced")
            # Iteration order follows the latest put
            del self._pending[key]
        self._pending[key] = update
        return update

    def remove(self, key: str) -> Optional[PendingUpdate]:
        """Remove and return the update under ``key``; no-op if absent."""
        return self._pending.pop(key, None)

    def get(self, key: str) -> Optional[PendingUpdate]:
        return self._pending.get(key)

    def clear(self) -> None:
        self._pending.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._pending))

    def pending_for(self, entity: EntityClass) -> List[PendingUpdate]:
        """Pending updates for one entity class, in ledger order."""
        return [u for u in self._pending.values() if u.entity.name == entity.name]

    def sweep(self, max_age: Optional[float] = None) -> int:
        """Remove every update older than ``max_age`` seconds.

        Bounds how long an optimistic change whose confirmation was lost keeps
        being reapplied.

        Returns:
            Number of updates removed.
        """
        limit = self.max_age if max_age is None else max_age
        now = self._clock()
        stale = [k for k, u in self._pending.items() if now - u.created_at > limit]
        for key in stale:
            del self._pending[key]
        if stale:
            logger.warning(f"Swept {len(stale)} stale pending update(s): {stale[:3]}")
        return len(stale)

    def project(self, base: List[Record], entity: EntityClass) -> List[Record]:
        """Overlay pending updates for ``entity`` onto ``base``.

        add appends the payload; update merges its fields into the first
        record matching the target identity; delete removes the first record
        matching the target identity. ``base`` and its records are never
        mutated, so projecting the same snapshot twice gives equal results.
        """
        result = list(base)
        for update in self._pending.values():
            if update.entity.name != entity.name:
                continue

            if update.operation == Operation.ADD:
                result.append(dict(update.data))
                continue

            index = next(
                (i for i, r in enumerate(result) if entity.matches(r, update.target)),
                None,
            )
            if index is None:
                continue
            if update.operation == Operation.UPDATE:
                result[index] = {**result[index], **update.data}
            elif update.operation == Operation.DELETE:
                del result[index]

        return result
