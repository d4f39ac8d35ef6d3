"""Async scheduler for recurring cron tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from argenteia.db import Database
from argenteia.models import ScheduledTask

LOGGER = logging.getLogger(__name__)

TaskHandler = Callable[[ScheduledTask], Awaitable[None]]


class TaskScheduler:
    """Polls active cron tasks and dispatches the due ones via callback.

    Cron expressions are evaluated in the owning user's timezone. A task is
    due when its next fire time after the last run (or creation) has passed.
    """

    def __init__(
        self,
        db: Database,
        handler: TaskHandler | None = None,
        poll_interval_seconds: float = 30.0,
        default_timezone: str = "UTC",
    ) -> None:
        self._db = db
        self._handler = handler
        self._poll_interval_seconds = poll_interval_seconds
        self._default_timezone = default_timezone
        self._stop_event = asyncio.Event()

    def set_handler(self, handler: TaskHandler) -> None:
        self._handler = handler

    def schedule(
        self,
        user_id: str,
        conversation_id: str,
        task: str,
        cron: str,
        origin: str,
        route_id: str | None = None,
    ) -> int:
        """Persist a recurring task.

        Raises:
            ValueError: ``cron`` is not a valid five-field expression.
        """
        cron = cron.strip()
        if len(cron.split()) != 5 or not croniter.is_valid(cron):
            raise ValueError(f'expresión cron inválida: "{cron}"')
        task_id = self._db.save_task(user_id, conversation_id, task, cron, origin, route_id)
        LOGGER.info("Scheduled task %s for %s (%s)", task_id, user_id, cron)
        return task_id

    def next_run(self, task: ScheduledTask) -> datetime:
        tz = self._user_timezone(task.user_id)
        base = datetime.fromisoformat(task.last_run_at or task.created_at).astimezone(tz)
        return croniter(task.cron, base).get_next(datetime)

    def due_tasks(self, now: datetime) -> list[ScheduledTask]:
        due: list[ScheduledTask] = []
        for task in self._db.get_active_tasks():
            try:
                if self.next_run(task) <= now:
                    due.append(task)
            except (ValueError, KeyError) as exc:
                LOGGER.warning("Skipping task %s with invalid schedule %r: %s", task.id, task.cron, exc)
        return due

    async def run_pending(self, now: datetime | None = None) -> int:
        """Dispatch every due task once; returns how many were dispatched."""

        now = now or datetime.now(timezone.utc)
        tasks = self.due_tasks(now)
        for task in tasks:
            self._db.mark_task_run(task.id, now)
            if self._handler is None:
                continue
            try:
                await self._handler(task)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduled task %s failed", task.id)
        return len(tasks)

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        while not self._stop_event.is_set():
            await self.run_pending()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()

    def _user_timezone(self, user_id: str) -> ZoneInfo:
        user = self._db.get_user(user_id)
        name = user.timezone if user is not None else self._default_timezone
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo(self._default_timezone)
