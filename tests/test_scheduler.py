from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from argenteia.db import Database
from argenteia.models import ToolContext
from argenteia.scheduler import TaskScheduler
from argenteia.tools.scheduler_tool import DeleteScheduledTaskTool, ListScheduledTasksTool, ScheduleTaskTool

CONTEXT = ToolContext(session_id="chat-1", user_id="ana", origin="signal", route_id="+34600000000")


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "argenteia.db")
    database.initialize()
    return database


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_schedule_rejects_invalid_cron(db):
    scheduler = TaskScheduler(db)

    for cron in ["cada día", "0 9 * *", "0 9 * * * *", "99 9 * * *"]:
        with pytest.raises(ValueError):
            scheduler.schedule("ana", "chat-1", "Beber agua", cron, "web")

    assert db.get_active_tasks() == []


def test_due_tasks_follow_cron_after_last_run(db):
    scheduler = TaskScheduler(db)
    task_id = scheduler.schedule("ana", "chat-1", "Beber agua", "0 9 * * *", "web")
    db.mark_task_run(task_id, _utc(2024, 5, 1, 8, 0))

    assert scheduler.due_tasks(_utc(2024, 5, 1, 8, 59)) == []
    assert [t.id for t in scheduler.due_tasks(_utc(2024, 5, 1, 9, 0))] == [task_id]


def test_cron_is_evaluated_in_user_timezone(db):
    db.upsert_user("ana", "Ana", "Europe/Madrid")
    scheduler = TaskScheduler(db)
    task_id = scheduler.schedule("ana", "chat-1", "Beber agua", "0 9 * * *", "web")
    db.mark_task_run(task_id, _utc(2024, 5, 1, 6, 0))

    task = db.get_user_tasks("ana")[0]
    assert scheduler.next_run(task) == datetime(2024, 5, 1, 9, 0, tzinfo=ZoneInfo("Europe/Madrid"))
    assert scheduler.due_tasks(_utc(2024, 5, 1, 6, 59)) == []
    assert len(scheduler.due_tasks(_utc(2024, 5, 1, 7, 0))) == 1


@pytest.mark.asyncio
async def test_run_pending_dispatches_once_per_occurrence(db):
    dispatched = []

    async def handler(task):
        dispatched.append(task.task)

    scheduler = TaskScheduler(db, handler=handler)
    task_id = scheduler.schedule("ana", "chat-1", "Resumen del día", "0 9 * * *", "web")
    db.mark_task_run(task_id, _utc(2024, 5, 1, 8, 0))

    assert await scheduler.run_pending(_utc(2024, 5, 1, 9, 0)) == 1
    assert await scheduler.run_pending(_utc(2024, 5, 1, 9, 0, 30)) == 0
    assert await scheduler.run_pending(_utc(2024, 5, 2, 9, 0)) == 1
    assert dispatched == ["Resumen del día", "Resumen del día"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_other_tasks(db):
    seen = []

    async def handler(task):
        seen.append(task.task)
        if task.task == "rota":
            raise RuntimeError("boom")

    scheduler = TaskScheduler(db, handler=handler)
    for name in ["rota", "sana"]:
        task_id = scheduler.schedule("ana", "chat-1", name, "*/5 * * * *", "web")
        db.mark_task_run(task_id, _utc(2024, 5, 1, 8, 0))

    assert await scheduler.run_pending(_utc(2024, 5, 1, 8, 5)) == 2
    assert seen == ["rota", "sana"]
    assert all(t.last_run_at == _utc(2024, 5, 1, 8, 5).isoformat() for t in db.get_active_tasks())


@pytest.mark.asyncio
async def test_scheduler_tools_round_trip(db):
    scheduler = TaskScheduler(db)
    schedule = ScheduleTaskTool(scheduler)
    listing = ListScheduledTasksTool(db)
    delete = DeleteScheduledTaskTool(db)

    assert await listing.run(CONTEXT) == "No tienes tareas programadas actualmente."

    created = await schedule.run(CONTEXT, task="Clima de Madrid", cron="30 7 * * *")
    task = db.get_user_tasks("ana")[0]
    assert f"ID {task.id}" in created
    assert task.origin == "signal"
    assert task.route_id == "+34600000000"
    assert task.conversation_id == "chat-1"

    listed = await listing.run(CONTEXT)
    assert "Clima de Madrid" in listed
    assert "30 7 * * *" in listed

    assert "No se encontró" in await delete.run(ToolContext(session_id="x", user_id="beto"), id=task.id)
    assert await delete.run(CONTEXT, id=task.id) == f"Tarea con ID {task.id} eliminada."
    assert db.get_user_tasks("ana") == []


@pytest.mark.asyncio
async def test_schedule_tool_reports_invalid_cron(db):
    result = await ScheduleTaskTool(TaskScheduler(db)).run(CONTEXT, task="x", cron="mañana")

    assert result.startswith("Error al programar la tarea")
    assert db.get_user_tasks("ana") == []
