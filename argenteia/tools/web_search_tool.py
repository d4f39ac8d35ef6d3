"""Web search through the ddgs metasearch client."""

from __future__ import annotations

import asyncio
from typing import Any

from ddgs import DDGS

from argenteia.config import ToolSettings
from argenteia.models import ToolContext
from argenteia.tools.base import Tool

DEFAULT_RESULTS = 5
MAX_RESULTS = 20


class WebSearchTool(Tool):
    """Keyless DuckDuckGo text search, offered only when ``tools.web_search`` is on."""

    name = "web_search"
    description = (
        "Busca información en la web con DuckDuckGo. Úsalo para obtener información "
        "actualizada o responder preguntas sobre hechos recientes."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "La consulta de búsqueda."},
            "limit": {
                "type": "integer",
                "description": f"Máximo de resultados (por defecto {DEFAULT_RESULTS}, máximo {MAX_RESULTS}).",
            },
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(self, settings: ToolSettings) -> None:
        self._settings = settings

    def is_enabled(self) -> bool:
        return self._settings.web_search

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        query = str(kwargs["query"]).strip()
        max_results = min(int(kwargs.get("limit") or DEFAULT_RESULTS), MAX_RESULTS)

        # ddgs is synchronous
        hits = await asyncio.to_thread(DDGS().text, query, max_results=max_results, backend="duckduckgo")
        if not hits:
            return f'No se encontraron resultados para: "{query}"'

        blocks = "\n\n---\n\n".join(
            f"**{hit.get('title', '')}**\n{hit.get('href', '')}\n{hit.get('body', '')}" for hit in hits
        )
        return f"Resultados para: {query}\n\n{blocks}"
