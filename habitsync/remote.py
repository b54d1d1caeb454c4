"""Remote store operations for habits, habit logs and todos.

Thin async wrappers over the Supabase query builder. Errors raised by the
client propagate unchanged; callers (the reconciler's mutation wrapper)
decide what a failure means.
"""

from datetime import date
from typing import List, Optional

from supabase import AsyncClient

from .types import HABIT_LOGS, HABITS, TODOS, Record

# =============================================================================
# Table Names
# =============================================================================

HABITS_TABLE = HABITS.table
HABIT_LOGS_TABLE = HABIT_LOGS.table
TODOS_TABLE = TODOS.table


def _first(result) -> Optional[Record]:
    return result.data[0] if result.data else None


# =============================================================================
# Habits
# =============================================================================


async def fetch_habits(db: AsyncClient) -> List[Record]:
    """Get the user's habits, oldest first (row-level security scopes the user)."""
    result = await db.table(HABITS_TABLE).select("*").order("created_at").execute()
    return result.data or []


async def add_habit(db: AsyncClient, name: str, user_id: str, today: Optional[date] = None) -> Optional[Record]:
    """Create a habit and return the stored row."""
    data = {
        "name": name,
        "completed": False,
        "date": (today or date.today()).isoformat(),
        "user_id": user_id,
    }
    result = await db.table(HABITS_TABLE).insert(data).execute()
    return _first(result)


async def toggle_habit(db: AsyncClient, habit_id, completed: bool) -> Optional[Record]:
    """Flip a habit's completed flag; ``completed`` is the current value."""
    result = await db.table(HABITS_TABLE).update({"completed": not completed}).eq("id", habit_id).execute()
    return _first(result)


async def delete_habit(db: AsyncClient, habit_id) -> None:
    await db.table(HABITS_TABLE).delete().eq("id", habit_id).execute()


# =============================================================================
# Habit Logs
# =============================================================================


async def fetch_habit_logs(db: AsyncClient, month_start: str, month_end: str) -> List[Record]:
    """Get habit logs with ``month_start <= log_date <= month_end``."""
    result = await (
        db.table(HABIT_LOGS_TABLE)
        .select("habit_id, log_date")
        .gte("log_date", month_start)
        .lte("log_date", month_end)
        .execute()
    )
    return result.data or []


async def check_habit(db: AsyncClient, habit_id, log_date: str, user_id: Optional[str] = None) -> Optional[Record]:
    """Mark a habit done on a day (idempotent upsert on habit_id + log_date)."""
    data = {"habit_id": habit_id, "log_date": log_date, "completed": True}
    if user_id:
        data["user_id"] = user_id
    result = await db.table(HABIT_LOGS_TABLE).upsert(data, on_conflict="habit_id,log_date").execute()
    return _first(result)


async def uncheck_habit(db: AsyncClient, habit_id, log_date: str) -> None:
    await db.table(HABIT_LOGS_TABLE).delete().eq("habit_id", habit_id).eq("log_date", log_date).execute()


# =============================================================================
# Todos
# =============================================================================


async def fetch_todos(db: AsyncClient) -> List[Record]:
    result = await db.table(TODOS_TABLE).select("*").order("created_at").execute()
    return result.data or []


async def add_todo(db: AsyncClient, title: str, user_id: str) -> Optional[Record]:
    result = await db.table(TODOS_TABLE).insert({"title": title, "completed": False, "user_id": user_id}).execute()
    return _first(result)


async def toggle_todo(db: AsyncClient, todo_id, completed: bool) -> Optional[Record]:
    """Flip a todo's completed flag; ``completed`` is the current value."""
    result = await db.table(TODOS_TABLE).update({"completed": not completed}).eq("id", todo_id).execute()
    return _first(result)


async def delete_todo(db: AsyncClient, todo_id) -> None:
    await db.table(TODOS_TABLE).delete().eq("id", todo_id).execute()
