"""Jina Reader URL fetching tool."""

from __future__ import annotations

from typing import Any

import httpx

from argenteia.config import ToolSettings
from argenteia.models import ToolContext
from argenteia.tools.base import Tool

JINA_BASE_URL = "https://r.jina.ai"
MAX_CONTENT_CHARS = 4000


class ReadUrlTool(Tool):
    """Fetch a web page and return its main content as text."""

    name = "read_url"
    description = (
        "Descarga una URL y extrae su contenido como texto. Úsalo para leer "
        "artículos, documentación o páginas web concretas."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "La URL completa a leer."},
        },
        "required": ["url"],
        "additionalProperties": False,
    }

    def __init__(self, settings: ToolSettings) -> None:
        self._settings = settings

    def is_enabled(self) -> bool:
        return self._settings.read_url

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        url = str(kwargs["url"]).strip()

        headers = {
            "Accept": "application/json",
            "X-Retain-Images": "none",
            "X-Remove-Selector": "nav, header, footer, aside, .sidebar, .ads",
        }
        if self._settings.jina_api_key:
            headers["Authorization"] = f"Bearer {self._settings.jina_api_key}"

        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{JINA_BASE_URL}/{url}", headers=headers, timeout=20.0)
            if resp.status_code != 200:
                return f'Error al leer "{url}" (HTTP {resp.status_code}).'
            data = resp.json()

        content = data.get("data", {})
        title = content.get("title") or "Sin título"
        body = (content.get("content") or "").strip()
        if len(body) > MAX_CONTENT_CHARS:
            body = body[:MAX_CONTENT_CHARS] + "\n\n[... contenido truncado]"

        return f"# {title}\nFuente: {url}\n\n{body}"
