"""Helpers for consuming server-sent event completion streams."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from argenteia.models import ToolCall

LOGGER = logging.getLogger(__name__)


async def iter_sse_payloads(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded JSON ``data:`` payloads until the ``[DONE]`` sentinel."""

    async for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            LOGGER.warning("Skipping undecodable stream payload: %r", data[:200])
            continue
        if isinstance(payload, dict):
            yield payload


@dataclass(slots=True)
class _PartialCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Builds tool calls from deltas keyed by their stream index.

    Id and name arrive once, argument text arrives in fragments. Calls are
    only materialized by ``finalize`` once the stream has ended, ordered by
    index regardless of arrival order.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PartialCall] = {}

    def add(self, index: int, call_id: str | None = None, name: str | None = None, arguments: str | None = None) -> None:
        partial = self._calls.setdefault(index, _PartialCall())
        if call_id:
            partial.id = call_id
        if name:
            partial.name = name
        if arguments:
            partial.arguments += arguments

    def add_openai_delta(self, delta: dict[str, Any]) -> None:
        function = delta.get("function") or {}
        self.add(
            int(delta.get("index", len(self._calls))),
            call_id=delta.get("id"),
            name=function.get("name"),
            arguments=function.get("arguments"),
        )

    def __bool__(self) -> bool:
        return bool(self._calls)

    def finalize(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for index in sorted(self._calls):
            partial = self._calls[index]
            if not partial.name:
                LOGGER.warning("Dropping tool call at index %d without a function name", index)
                continue
            calls.append(
                ToolCall(
                    id=partial.id or f"call_{index}",
                    name=partial.name,
                    arguments=partial.arguments or "{}",
                )
            )
        return calls
