"""Cron task scheduling tools."""

from __future__ import annotations

from typing import Any

from argenteia.db import Database
from argenteia.models import ToolContext
from argenteia.scheduler import TaskScheduler
from argenteia.tools.base import Tool


class ScheduleTaskTool(Tool):
    name = "schedule_task"
    description = (
        "Programa una acción o recordatorio para ejecutarse automáticamente usando "
        "formato cron (minuto hora día mes día-semana). Ej: '30 7 * * *' para las 7:30 todos los días."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "task": {"type": "string", "description": "Descripción detallada de la tarea a realizar."},
            "cron": {"type": "string", "description": "Horario en formato cron de cinco campos."},
        },
        "required": ["task", "cron"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: TaskScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        task = str(kwargs["task"]).strip()
        cron = str(kwargs["cron"]).strip()
        try:
            task_id = self._scheduler.schedule(
                user_id=context.user_id,
                conversation_id=context.session_id,
                task=task,
                cron=cron,
                origin=context.origin,
                route_id=context.route_id,
            )
        except ValueError as exc:
            return f"Error al programar la tarea: {exc}"
        return f'Tarea programada (ID {task_id}). Se ejecutará "{task}" con el horario "{cron}".'


class ListScheduledTasksTool(Tool):
    name = "list_scheduled_tasks"
    description = "Lista las tareas programadas del usuario."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        tasks = [t for t in self._db.get_user_tasks(context.user_id) if t.active]
        if not tasks:
            return "No tienes tareas programadas actualmente."
        lines = "\n".join(f'- [ID {t.id}] "{t.task}" (horario: {t.cron})' for t in tasks)
        return f"Tus tareas programadas:\n{lines}"


class DeleteScheduledTaskTool(Tool):
    name = "delete_scheduled_task"
    description = "Elimina una tarea programada usando su ID numérico."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "id": {"type": "integer", "description": "ID numérico de la tarea a eliminar."},
        },
        "required": ["id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        task_id = int(kwargs["id"])
        if self._db.delete_task(task_id, context.user_id):
            return f"Tarea con ID {task_id} eliminada."
        return f"No se encontró ninguna tarea con ID {task_id} para este usuario."
