"""Anthropic Messages API transport."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from argenteia.errors import ProviderConnectionError, provider_error_for_status
from argenteia.llm.base import DeltaSink, LLMProvider
from argenteia.llm.streaming import ToolCallAccumulator, iter_sse_payloads
from argenteia.models import LLMResponse, Usage, safe_json_loads

_LOGGER = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096

# In-stream ``error`` event types mapped to the HTTP status they stand for.
_STREAM_ERROR_STATUS = {
    "rate_limit_error": 429,
    "authentication_error": 401,
    "permission_error": 401,
    "not_found_error": 404,
    "overloaded_error": 503,
}


class AnthropicProvider(LLMProvider):
    """Streams completions from ``/v1/messages`` and maps them to the OpenAI shape."""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        on_delta: DeltaSink | None = None,
    ) -> LLMResponse:
        system, converted = to_anthropic_messages(messages)
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": converted,
            "temperature": temperature,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {
                    "name": spec["function"]["name"],
                    "description": spec["function"].get("description", ""),
                    "input_schema": spec["function"].get("parameters") or {"type": "object", "properties": {}},
                }
                for spec in tools
            ]

        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        content_parts: list[str] = []
        accumulator = ToolCallAccumulator()
        usage = Usage()
        finish_reason: str | None = None

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=httpx.Timeout(self._timeout_seconds), transport=self._transport
            ) as client:
                async with client.stream("POST", "/v1/messages", headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise provider_error_for_status(response.status_code, body)

                    async for event in iter_sse_payloads(response.aiter_lines()):
                        kind = event.get("type")
                        if kind == "message_start":
                            raw_usage = (event.get("message") or {}).get("usage") or {}
                            usage.prompt_tokens = int(raw_usage.get("input_tokens") or 0)
                        elif kind == "content_block_start":
                            block = event.get("content_block") or {}
                            if block.get("type") == "tool_use":
                                accumulator.add(int(event["index"]), call_id=block.get("id"), name=block.get("name"))
                        elif kind == "content_block_delta":
                            delta = event.get("delta") or {}
                            if delta.get("type") == "text_delta" and delta.get("text"):
                                content_parts.append(delta["text"])
                                if on_delta is not None:
                                    on_delta(delta["text"])
                            elif delta.get("type") == "input_json_delta":
                                accumulator.add(int(event["index"]), arguments=delta.get("partial_json"))
                        elif kind == "message_delta":
                            finish_reason = (event.get("delta") or {}).get("stop_reason") or finish_reason
                            usage.completion_tokens = int((event.get("usage") or {}).get("output_tokens") or 0)
                        elif kind == "error":
                            error = event.get("error") or {}
                            status = _STREAM_ERROR_STATUS.get(str(error.get("type")), 503)
                            raise provider_error_for_status(status, str(error.get("message", error)))
        except httpx.TransportError as exc:
            raise ProviderConnectionError(f"{type(exc).__name__}: {exc}") from exc

        usage.total_tokens = usage.prompt_tokens + usage.completion_tokens
        content = "".join(content_parts)
        tool_calls = accumulator.finalize()
        _LOGGER.info(
            "LLM response: model=%s stop_reason=%r content=%r tool_calls=%r",
            self.model,
            finish_reason,
            content[:200],
            [tc.name for tc in tool_calls],
        )
        return LLMResponse(content=content, tool_calls=tool_calls, usage=usage, finish_reason=finish_reason)


def to_anthropic_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Split out system text and convert OpenAI-shaped messages to content blocks.

    Consecutive tool results are merged into a single user turn, as the
    Messages API requires results to directly follow the tool_use turn.
    """

    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""
        if role == "system":
            if content:
                system_parts.append(content)
            continue
        if role == "tool":
            block = {"type": "tool_result", "tool_use_id": message.get("tool_call_id"), "content": content}
            if converted and converted[-1]["role"] == "user" and _is_tool_result_turn(converted[-1]):
                converted[-1]["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue
        if role == "assistant" and message.get("tool_calls"):
            blocks: list[dict[str, Any]] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for call in message["tool_calls"]:
                function = call.get("function") or {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.get("id"),
                        "name": function.get("name"),
                        "input": safe_json_loads(function.get("arguments")),
                    }
                )
            converted.append({"role": "assistant", "content": blocks})
            continue
        if not content:
            continue
        converted.append({"role": "assistant" if role == "assistant" else "user", "content": content})
    return "\n\n".join(system_parts), converted


def _is_tool_result_turn(message: dict[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and all(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    )
