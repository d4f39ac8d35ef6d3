"""Expert delegation tool."""

from __future__ import annotations

from typing import Any

from argenteia.experts import ExpertRunner
from argenteia.models import ToolContext
from argenteia.tools.base import Tool


class CallExpertTool(Tool):
    """Hand a focused task to another expert profile and return its answer."""

    name = "call_expert"
    description = (
        "Llama a un sub-agente (experto) especializado para realizar una tarea concreta "
        "con su propio modelo y prompt."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "expert_name": {
                "type": "string",
                "description": "Nombre del experto a invocar (ej: coder, escritor, researcher).",
            },
            "task": {"type": "string", "description": "La tarea o pregunta específica para el experto."},
        },
        "required": ["expert_name", "task"],
        "additionalProperties": False,
    }

    def __init__(self, runner: ExpertRunner) -> None:
        self._runner = runner

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        return await self._runner.run(
            str(kwargs["expert_name"]),
            str(kwargs["task"]),
            caller=context.expert_name,
            allowed=context.allowed_experts,
        )
