"""Tests for the remote store wrappers, using a mocked Supabase query builder."""

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from habitsync import remote


def _mock_db(data=None):
    """Mock client whose query builder chains and whose execute returns ``data``."""
    db = MagicMock()
    query = MagicMock()
    for method in ("select", "order", "insert", "update", "upsert", "delete", "eq", "gte", "lte"):
        getattr(query, method).return_value = query
    query.execute = AsyncMock(return_value=MagicMock(data=data))
    db.table.return_value = query
    return db, query


class TestHabits:
    @pytest.mark.asyncio
    async def test_fetch_habits_ordered(self):
        db, query = _mock_db([{"id": 1}])

        assert await remote.fetch_habits(db) == [{"id": 1}]
        db.table.assert_called_once_with("habits")
        query.order.assert_called_once_with("created_at")

    @pytest.mark.asyncio
    async def test_fetch_habits_empty_result(self):
        db, _ = _mock_db(None)
        assert await remote.fetch_habits(db) == []

    @pytest.mark.asyncio
    async def test_add_habit_inserts_row(self):
        db, query = _mock_db([{"id": 3, "name": "Read"}])

        row = await remote.add_habit(db, "Read", "u1", today=date(2024, 5, 3))

        assert row == {"id": 3, "name": "Read"}
        query.insert.assert_called_once_with(
            {"name": "Read", "completed": False, "date": "2024-05-03", "user_id": "u1"}
        )

    @pytest.mark.asyncio
    async def test_toggle_habit_flips_flag(self):
        db, query = _mock_db([])

        assert await remote.toggle_habit(db, 1, True) is None
        query.update.assert_called_once_with({"completed": False})
        query.eq.assert_called_once_with("id", 1)

    @pytest.mark.asyncio
    async def test_delete_habit(self):
        db, query = _mock_db()

        await remote.delete_habit(db, 1)

        query.delete.assert_called_once_with()
        query.eq.assert_called_once_with("id", 1)


class TestHabitLogs:
    @pytest.mark.asyncio
    async def test_fetch_logs_for_range(self):
        db, query = _mock_db([{"habit_id": 1, "log_date": "2024-05-03"}])

        await remote.fetch_habit_logs(db, "2024-05-01", "2024-05-31")

        db.table.assert_called_once_with("habit_logs")
        query.gte.assert_called_once_with("log_date", "2024-05-01")
        query.lte.assert_called_once_with("log_date", "2024-05-31")

    @pytest.mark.asyncio
    async def test_check_habit_upserts_on_natural_key(self):
        db, query = _mock_db([{"habit_id": 1, "log_date": "2024-05-03"}])

        await remote.check_habit(db, 1, "2024-05-03", "u1")

        query.upsert.assert_called_once_with(
            {"habit_id": 1, "log_date": "2024-05-03", "completed": True, "user_id": "u1"},
            on_conflict="habit_id,log_date",
        )

    @pytest.mark.asyncio
    async def test_uncheck_habit_matches_both_keys(self):
        db, query = _mock_db()

        await remote.uncheck_habit(db, 1, "2024-05-03")

        assert [c.args for c in query.eq.call_args_list] == [("habit_id", 1), ("log_date", "2024-05-03")]


class TestTodos:
    @pytest.mark.asyncio
    async def test_add_todo_uses_title(self):
        db, query = _mock_db([{"id": 5, "title": "Milk"}])

        await remote.add_todo(db, "Milk", "u1")

        db.table.assert_called_once_with("todos")
        query.insert.assert_called_once_with({"title": "Milk", "completed": False, "user_id": "u1"})

    @pytest.mark.asyncio
    async def test_toggle_todo_returns_row(self):
        db, _ = _mock_db([{"id": 5, "completed": True}])

        assert await remote.toggle_todo(db, 5, False) == {"id": 5, "completed": True}

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        db, query = _mock_db()
        query.execute.side_effect = RuntimeError("permission denied")

        with pytest.raises(RuntimeError):
            await remote.delete_todo(db, 5)
