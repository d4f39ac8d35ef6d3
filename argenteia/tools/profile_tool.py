"""User profile (onboarding) tool."""

from __future__ import annotations

from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from argenteia.db import Database
from argenteia.models import ToolContext
from argenteia.tools.base import Tool


class UpdateProfileTool(Tool):
    """Create or update the user's name and timezone."""

    name = "update_profile"
    description = (
        "Crea o actualiza el perfil del usuario con su nombre y zona horaria. "
        "Úsalo durante el onboarding o cuando el usuario quiera cambiar sus datos."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Nombre del usuario."},
            "timezone": {
                "type": "string",
                "description": "Zona horaria IANA, por ejemplo 'America/Argentina/Buenos_Aires'.",
            },
        },
        "required": ["name"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database, default_timezone: str) -> None:
        self._db = db
        self._default_timezone = default_timezone

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        name = str(kwargs["name"]).strip()
        tz_name = str(kwargs.get("timezone") or self._default_timezone).strip()
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return f'Zona horaria inválida: "{tz_name}". Usa un nombre IANA como "Europe/Madrid".'
        self._db.upsert_user(context.user_id, name or None, tz_name)
        return f"Perfil actualizado para {name}. Zona horaria: {tz_name}."
