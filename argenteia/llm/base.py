"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

from argenteia.models import LLMResponse

DeltaSink = Callable[[str], None]


class LLMProvider(ABC):
    """Abstract model transport used by the agent runtime.

    Implementations must not open connections until ``stream`` is awaited.
    """

    model: str

    @abstractmethod
    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        on_delta: DeltaSink | None = None,
    ) -> LLMResponse:
        """Stream a completion, forwarding text deltas to ``on_delta``.

        Raises:
            ProviderError: for HTTP or transport failures, typed by status.
        """

    async def generate(
        self,
        messages: list[dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """One-shot completion without tools or delta forwarding."""

        return await self.stream(messages, tools=None, temperature=temperature, max_tokens=max_tokens)
