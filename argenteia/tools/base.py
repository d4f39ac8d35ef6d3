"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from argenteia.models import ToolContext


class Tool(ABC):
    """Base class for all assistant tools."""

    name: str
    description: str
    parameters_schema: dict[str, Any]

    def is_enabled(self) -> bool:
        """Whether the tool is offered to models under the current configuration."""

        return True

    def spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    @abstractmethod
    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        """Execute tool with validated arguments and return text for the model."""
