"""Registry for safe tool registration and execution."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError, create_model

from argenteia.db import Database
from argenteia.errors import ToolDisabled, ToolError, ToolNotFound
from argenteia.models import ToolContext
from argenteia.tools.base import Tool

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of tools keyed by unique name.

    Populated once at startup before any conversation runs.
    """

    def __init__(self, db: Database | None = None) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def enabled_names(self) -> list[str]:
        return [name for name, tool in self._tools.items() if tool.is_enabled()]

    def list_enabled(self, names: set[str] | None = None) -> list[dict[str, Any]]:
        """Return function specs of enabled tools, optionally intersected with ``names``."""

        return [
            tool.spec()
            for tool in self._tools.values()
            if tool.is_enabled() and (names is None or tool.name in names)
        ]

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> str:
        """Run a tool; executor failures come back as error text.

        Raises:
            ToolNotFound: no tool registered under ``name``.
            ToolDisabled: the tool's enablement predicate is currently false.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name)
        if not tool.is_enabled():
            raise ToolDisabled(name)

        try:
            validated = _validate_json_schema(tool.parameters_schema, arguments)
            result = await tool.run(context, **validated)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool %r failed", name)
            output = f"Error al ejecutar {name}: {exc}"
            self._log(context, name, arguments, output, succeeded=False)
            return output
        self._log(context, name, arguments, result, succeeded=True)
        return result

    async def dispatch(self, name: str, arguments: dict[str, Any], context: ToolContext) -> str:
        """Like ``execute`` but lookup failures are also reported as text."""

        try:
            return await self.execute(name, arguments, context)
        except ToolError as exc:
            LOGGER.warning("Tool call rejected: %s", exc)
            return str(exc)

    def _log(self, context: ToolContext, name: str, arguments: dict[str, Any], output: str, succeeded: bool) -> None:
        if self._db is None:
            return
        self._db.log_tool_execution(context.session_id, name, arguments, output, succeeded=succeeded)


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[Any, Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**{k: v for k, v in payload.items() if k in props})
    except ValidationError as exc:
        raise ValueError(f"argumentos inválidos: {exc.error_count()} error(es) de validación") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
