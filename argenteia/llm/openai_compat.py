"""OpenAI-compatible streaming chat completions (OpenAI, OpenRouter, local servers)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from argenteia.errors import ProviderConnectionError, provider_error_for_status
from argenteia.llm.base import DeltaSink, LLMProvider
from argenteia.llm.streaming import ToolCallAccumulator, iter_sse_payloads
from argenteia.models import LLMResponse, Usage

_LOGGER = logging.getLogger(__name__)

OPENROUTER_HEADERS = {"HTTP-Referer": "https://github.com/argenteia", "X-Title": "ARGenteIA"}


class OpenAICompatibleProvider(LLMProvider):
    """LLM provider speaking the OpenAI ``/chat/completions`` streaming protocol."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 60.0,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._extra_headers = extra_headers or {}
        self._transport = transport

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        on_delta: DeltaSink | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            **self._extra_headers,
        }

        content_parts: list[str] = []
        accumulator = ToolCallAccumulator()
        usage: Usage | None = None
        finish_reason: str | None = None

        timeout = httpx.Timeout(self._timeout_seconds)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=timeout, transport=self._transport
            ) as client:
                async with client.stream("POST", "/chat/completions", headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise provider_error_for_status(response.status_code, body)

                    async for chunk in iter_sse_payloads(response.aiter_lines()):
                        if chunk.get("error"):
                            error = chunk["error"]
                            code = error.get("code") if isinstance(error, dict) else None
                            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                            raise provider_error_for_status(int(code) if isinstance(code, int) else 500, message)
                        if chunk.get("usage"):
                            usage = _parse_usage(chunk["usage"])
                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            text = delta.get("content")
                            if text:
                                content_parts.append(text)
                                if on_delta is not None:
                                    on_delta(text)
                            for tool_delta in delta.get("tool_calls") or []:
                                accumulator.add_openai_delta(tool_delta)
                            if choice.get("finish_reason"):
                                finish_reason = choice["finish_reason"]
        except httpx.TransportError as exc:
            raise ProviderConnectionError(f"{type(exc).__name__}: {exc}") from exc

        tool_calls = accumulator.finalize()
        content = "".join(content_parts)
        _LOGGER.info(
            "LLM response: model=%s finish_reason=%r content=%r tool_calls=%r",
            self.model,
            finish_reason,
            content[:200],
            [tc.name for tc in tool_calls],
        )
        return LLMResponse(content=content, tool_calls=tool_calls, usage=usage, finish_reason=finish_reason)


def _parse_usage(raw: dict[str, Any]) -> Usage:
    prompt = int(raw.get("prompt_tokens") or 0)
    completion = int(raw.get("completion_tokens") or 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(raw.get("total_tokens") or prompt + completion),
    )
