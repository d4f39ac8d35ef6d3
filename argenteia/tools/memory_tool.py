"""Long-term per-user fact memory tools."""

from __future__ import annotations

from typing import Any

from argenteia.db import Database
from argenteia.models import ToolContext
from argenteia.tools.base import Tool


class MemorizeFactTool(Tool):
    """Persist a fact about the user."""

    name = "memorize_fact"
    description = (
        "Guarda un dato importante sobre el usuario para recordarlo en el futuro. "
        "Úsalo cuando el usuario comparta preferencias o pida que recuerdes algo."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "fact": {
                "type": "string",
                "description": "El dato a recordar, por ejemplo 'Le gusta el café sin azúcar'.",
            },
        },
        "required": ["fact"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        fact = str(kwargs["fact"]).strip()
        if not fact:
            return "Error: el dato está vacío."
        fact_id = self._db.save_fact(context.user_id, fact)
        return f'He memorizado (ID {fact_id}): "{fact}"'


class RecallFactsTool(Tool):
    """List memorized facts for the user."""

    name = "recall_facts"
    description = "Recupera todos los datos memorizados sobre el usuario actual."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        facts = self._db.get_facts(context.user_id)
        if not facts:
            return "No tengo datos memorizados sobre este usuario todavía."
        lines = "\n".join(f"- [ID {f.id}] {f.fact} ({f.created_at})" for f in facts)
        return f"Datos memorizados sobre el usuario:\n{lines}"


class ForgetFactTool(Tool):
    """Delete a memorized fact by id."""

    name = "forget_fact"
    description = (
        "Elimina un dato memorizado usando su ID. Obtén el ID primero con recall_facts."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "id": {"type": "integer", "description": "ID numérico del dato a eliminar."},
        },
        "required": ["id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        fact_id = int(kwargs["id"])
        if self._db.delete_fact(fact_id, context.user_id):
            return f"He olvidado el dato con ID {fact_id}."
        return f"No encontré ningún dato con ID {fact_id} para este usuario."
