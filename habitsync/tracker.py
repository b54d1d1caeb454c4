"""Habit tracker state for one signed-in user.

HabitTracker is the caller side of the sync core: it loads a month of data
through the read cache, keeps it live with push subscriptions, and runs
every user mutation through the reconciler so the views always show pending
optimistic changes on top of confirmed data.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import remote
from .events import ChangeEvent
from .reconcile import Reconciler
from .service import SyncService
from .types import HABIT_LOGS, HABITS, TODOS, MutationResult, Operation, Record
from .validation import MAX_HABIT_NAME_LENGTH, MAX_TODO_TITLE_LENGTH, sanitize_name, validate_month

logger = logging.getLogger(__name__)


def normalize_todo(record: Record) -> Record:
    """Todos are stored with ``title``; views read ``name``."""
    record["name"] = record.get("title") or record.get("name") or ""
    return record


def habit_log_key(habit_id: Any, log_date: str) -> str:
    """Ledger key for a day check-box; checking and unchecking share it."""
    return f"{HABIT_LOGS.name}:{habit_id}-{log_date}"


@dataclass
class TrackerSnapshot:
    """What the UI renders: projected views plus load metadata."""

    month: Optional[str]
    habits: List[Record] = field(default_factory=list)
    habit_logs: List[Record] = field(default_factory=list)
    todos: List[Record] = field(default_factory=list)
    from_cache: bool = False
    online: bool = True


class HabitTracker:
    """Live, optimistic view of one user's habits, habit logs and todos.

    Args:
        service: The sync service holding the core singletons.
        db: Async Supabase client used for remote store calls.
        user_id: Owner of the records; also the realtime filter.
    """

    def __init__(self, service: SyncService, db: Any, user_id: str):
        if not user_id:
            raise ValueError("user_id cannot be empty")
        self.service = service
        self.db = db
        self.user_id = user_id
        self.month: Optional[str] = None
        self.reconciler = Reconciler(service.ledger)
        self.reconciler.set_normalizer(TODOS, normalize_todo)

        self._detach: List[Callable[[], None]] = []
        self._load_gen = 0
        # Events seen while each in-flight load is fetching, by load generation
        self._replays: Dict[int, List[ChangeEvent]] = {}
        self._background: set = set()

    # === Lifecycle ===

    async def start(self) -> None:
        """Subscribe to connectivity and to changes of all three entity classes."""
        self._detach.append(self.service.connectivity.subscribe(self._on_connectivity))
        try:
            for entity in (HABITS, HABIT_LOGS, TODOS):
                detach = await self.service.subscribe_to_entity_changes(entity, self.user_id, self._on_event)
                self._detach.append(detach)
        except Exception:
            self.stop()
            raise

    def stop(self) -> None:
        for detach in reversed(self._detach):
            detach()
        self._detach.clear()
        for task in list(self._background):
            task.cancel()

    # === Loading ===

    @property
    def cache_prefix(self) -> str:
        return f"data-{self.user_id}-"

    def cache_key(self, month: str) -> str:
        return f"{self.cache_prefix}{month}"

    async def load_month(self, month: str) -> TrackerSnapshot:
        """Load habits, todos and the month's habit logs.

        A cached copy is trusted only while online; otherwise the store is
        asked. If that fetch fails and a cached copy is still valid, the
        cached copy is used instead.

        Loads may overlap (a reconnect reload racing a month switch). Only the
        most recent call installs its result; an earlier one that finishes
        later returns the current snapshot and leaves base and cache alone.
        """
        month_start, month_end = validate_month(month)
        self._load_gen += 1
        generation = self._load_gen
        self.month = month
        self.reconciler.set_scope(HABIT_LOGS, lambda r: month_start <= str(r.get("log_date", "")) <= month_end)

        key = self.cache_key(month)
        cached = self.service.cache.get(key)
        online = self.service.connectivity.get_status()
        if cached is not None and online:
            logger.debug(f"Cache hit for {key}")
            self._install(cached)
            return self.snapshot(from_cache=True)

        self._replays[generation] = []
        fetched = None
        error: Optional[Exception] = None
        try:
            fetched = await asyncio.gather(
                remote.fetch_habits(self.db),
                remote.fetch_todos(self.db),
                remote.fetch_habit_logs(self.db, month_start, month_end),
            )
        except Exception as e:
            error = e
        finally:
            replay = self._replays.pop(generation, [])

        if generation != self._load_gen:
            logger.debug(f"Discarding superseded load of {month}")
            return self.snapshot(from_cache=fetched is None)

        if fetched is None:
            if cached is None:
                raise error
            logger.warning(f"Failed to load {month} ({'online' if online else 'offline'}), using cached data: {error}")
            self._install(cached)
        else:
            habits, todos, logs = fetched
            self._install({"habits": habits, "todos": todos, "habit_logs": logs})
        # Events that arrived while the fetch was in flight may predate its snapshot
        for event in replay:
            self.reconciler.apply_event(event)
        if fetched is None:
            return self.snapshot(from_cache=True)
        self._store_snapshot()
        return self.snapshot()

    def _install(self, data: dict) -> None:
        self.reconciler.replace_base(HABITS, data.get("habits") or [])
        self.reconciler.replace_base(TODOS, data.get("todos") or [])
        self.reconciler.replace_base(HABIT_LOGS, data.get("habit_logs") or [])

    def _store_snapshot(self, refresh: bool = False) -> None:
        """Cache the base collections for the current month.

        With ``refresh`` the entry keeps the capture time of the fetch it came
        from, so local changes never extend its lifetime.
        """
        if self.month is None:
            return
        key = self.cache_key(self.month)
        value = {
            "habits": self.reconciler.base(HABITS),
            "todos": self.reconciler.base(TODOS),
            "habit_logs": self.reconciler.base(HABIT_LOGS),
        }
        if refresh:
            self.service.cache.refresh(key, value)
        else:
            self.service.cache.set(key, value)

    # === Views ===

    @property
    def habits(self) -> List[Record]:
        return self.reconciler.view(HABITS)

    @property
    def habit_logs(self) -> List[Record]:
        return self.reconciler.view(HABIT_LOGS)

    @property
    def todos(self) -> List[Record]:
        return self.reconciler.view(TODOS)

    def snapshot(self, from_cache: bool = False) -> TrackerSnapshot:
        return TrackerSnapshot(
            month=self.month,
            habits=self.habits,
            habit_logs=self.habit_logs,
            todos=self.todos,
            from_cache=from_cache,
            online=self.service.connectivity.get_status(),
        )

    def is_pending(self, key: str) -> bool:
        """Whether a mutation under ``key`` is still awaiting confirmation."""
        return key in self.service.ledger

    def is_checked(self, habit_id: Any, log_date: str) -> bool:
        return self.reconciler.find(HABIT_LOGS, (habit_id, log_date)) is not None

    # === Push Events ===

    def _on_event(self, event: ChangeEvent) -> None:
        self.reconciler.apply_event(event)
        for buffer in self._replays.values():
            buffer.append(event)
        loading = bool(self._replays)
        keep = None if loading or self.month is None else self.cache_key(self.month)
        # Other months' snapshots may now be stale
        self.service.cache.invalidate_prefix(self.cache_prefix, keep=keep)
        if not loading:
            self._store_snapshot(refresh=True)

    def _on_connectivity(self, online: bool) -> None:
        if not online or self.month is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.load_month(self.month))
        self._background.add(task)
        task.add_done_callback(self._on_reload_done)

    def _on_reload_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Reload after reconnect failed: {error}")

    # === Mutations ===

    async def _mutate(self, *args, **kwargs) -> MutationResult:
        result = await self.reconciler.mutate(*args, **kwargs)
        if result.success:
            self._store_snapshot(refresh=True)
        return result

    async def add_habit(self, name: str) -> MutationResult:
        """Add a habit; it shows up immediately under a provisional ``temp-`` id."""
        name = sanitize_name(name, "Habit name", MAX_HABIT_NAME_LENGTH)
        temp_id = f"temp-{uuid.uuid4().hex[:12]}"
        data = {"id": temp_id, "name": name, "user_id": self.user_id}
        return await self._mutate(
            HABITS,
            Operation.ADD,
            lambda: remote.add_habit(self.db, name, self.user_id),
            data=data,
            key=temp_id,
        )

    async def toggle_habit(self, habit_id: Any) -> Optional[MutationResult]:
        habit = self.reconciler.find(HABITS, (habit_id,))
        if habit is None:
            return None
        completed = bool(habit.get("completed"))
        return await self._mutate(
            HABITS,
            Operation.UPDATE,
            lambda: remote.toggle_habit(self.db, habit_id, completed),
            data={"completed": not completed},
            target=(habit_id,),
        )

    async def delete_habit(self, habit_id: Any) -> Optional[MutationResult]:
        if self.reconciler.find(HABITS, (habit_id,)) is None:
            return None
        return await self._mutate(
            HABITS,
            Operation.DELETE,
            lambda: remote.delete_habit(self.db, habit_id),
            target=(habit_id,),
        )

    async def toggle_day(self, habit_id: Any, day: int) -> MutationResult:
        """Check or uncheck ``habit_id`` on ``day`` of the loaded month."""
        if self.month is None:
            raise ValueError("No month loaded")
        _, month_end = validate_month(self.month)
        if not 1 <= day <= int(month_end[-2:]):
            raise ValueError(f"Day {day} is outside {self.month}")
        log_date = f"{self.month}-{day:02d}"
        key = habit_log_key(habit_id, log_date)

        if self.is_checked(habit_id, log_date):
            return await self._mutate(
                HABIT_LOGS,
                Operation.DELETE,
                lambda: remote.uncheck_habit(self.db, habit_id, log_date),
                target=(habit_id, log_date),
                key=key,
            )
        return await self._mutate(
            HABIT_LOGS,
            Operation.ADD,
            lambda: remote.check_habit(self.db, habit_id, log_date, self.user_id),
            data={"habit_id": habit_id, "log_date": log_date},
            key=key,
        )

    async def add_todo(self, title: str) -> MutationResult:
        title = sanitize_name(title, "Task name", MAX_TODO_TITLE_LENGTH)
        temp_id = f"temp-task-{uuid.uuid4().hex[:12]}"
        data = {"id": temp_id, "title": title, "name": title, "completed": False}
        return await self._mutate(
            TODOS,
            Operation.ADD,
            lambda: remote.add_todo(self.db, title, self.user_id),
            data=data,
            key=temp_id,
        )

    async def toggle_todo(self, todo_id: Any) -> Optional[MutationResult]:
        todo = self.reconciler.find(TODOS, (todo_id,))
        if todo is None:
            return None
        completed = bool(todo.get("completed"))
        return await self._mutate(
            TODOS,
            Operation.UPDATE,
            lambda: remote.toggle_todo(self.db, todo_id, completed),
            data={"completed": not completed},
            target=(todo_id,),
        )

    async def delete_todo(self, todo_id: Any) -> Optional[MutationResult]:
        if self.reconciler.find(TODOS, (todo_id,)) is None:
            return None
        return await self._mutate(
            TODOS,
            Operation.DELETE,
            lambda: remote.delete_todo(self.db, todo_id),
            target=(todo_id,),
        )
