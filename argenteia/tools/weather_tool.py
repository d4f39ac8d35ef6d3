"""wttr.in weather tool."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from argenteia.models import ToolContext
from argenteia.tools.base import Tool

WTTR_URL = "https://wttr.in"


class GetWeatherTool(Tool):
    """Current weather for a location (or the caller's IP location)."""

    name = "get_weather"
    description = (
        "Obtiene el clima actual de una ubicación. Pasa la ciudad o país; "
        "déjalo vacío si el usuario no especifica una ubicación."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "Ciudad o ubicación, por ejemplo 'Madrid' o 'Buenos Aires'.",
            },
        },
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        location = str(kwargs.get("location") or "").strip()
        url = f"{WTTR_URL}/{quote(location)}"

        async with httpx.AsyncClient() as client:
            resp = await client.get(
                url,
                params={"format": "%l: %c %t %w %h"},
                headers={"User-Agent": "ARGenteIA/1.0"},
                timeout=15.0,
            )
            if resp.status_code != 200:
                return f"Error al conectar con el servicio de clima (HTTP {resp.status_code})."
            data = resp.text.strip()

        if not data or "Unknown location" in data:
            return f'No se pudo encontrar información de clima para: "{location or "tu ubicación actual"}"'
        return f"Reporte del clima:\n{data}\n\nFuente: wttr.in"
