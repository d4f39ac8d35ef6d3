"""Time utility tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from argenteia.db import Database
from argenteia.models import ToolContext
from argenteia.tools.base import Tool


class GetCurrentTimeTool(Tool):
    """Returns the current time in the user's (or a requested) timezone."""

    name = "get_current_time"
    description = (
        "Get the current date/time in ISO-8601 format. Uses the user's timezone "
        "unless an IANA timezone such as 'Asia/Tokyo' is given."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "IANA timezone name (optional)."},
        },
        "additionalProperties": False,
    }

    def __init__(self, db: Database | None = None, default_timezone: str = "UTC") -> None:
        self._db = db
        self._default_timezone = default_timezone

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        tz_name = kwargs.get("timezone") or self._user_timezone(context.user_id)
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return f'Zona horaria desconocida: "{tz_name}".'
        now = datetime.now(timezone.utc).astimezone(tz)
        return f"{now.isoformat()} ({tz_name})"

    def _user_timezone(self, user_id: str) -> str:
        if self._db is not None:
            user = self._db.get_user(user_id)
            if user is not None:
                return user.timezone
        return self._default_timezone
