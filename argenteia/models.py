"""Core domain models used across layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

GENERAL_EXPERT = "__general__"


@dataclass(slots=True)
class InboundMessage:
    """Message normalized by channel adapters for runtime usage."""

    conversation_id: str
    sender_id: str
    text: str
    timestamp: datetime
    origin: str = "web"
    message_id: str | None = None
    is_group: bool = False
    route_id: str | None = None


@dataclass(slots=True)
class ToolCall:
    """Tool invocation requested by a model, arguments kept as raw JSON text."""

    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        return safe_json_loads(self.arguments)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass(slots=True)
class ChatMessage:
    """One entry of a conversation as exchanged with the model."""

    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        if self.role == "tool":
            return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}
        wire: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return wire


@dataclass(slots=True)
class Usage:
    """Token accounting reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Usage | None) -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class LLMResponse:
    """Result of one (streamed) completion request."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None


@dataclass(slots=True)
class ToolContext:
    """Invocation context handed to every tool executor."""

    session_id: str
    user_id: str
    origin: str = "web"
    route_id: str | None = None
    is_group: bool = False
    # Calling profile; ``allowed_experts`` None means any expert may be called.
    expert_name: str | None = None
    allowed_experts: list[str] | None = None


@dataclass(slots=True)
class ExpertProfile:
    """Named override bundle for model, prompt, temperature and allow-lists.

    ``tools``/``experts`` set to ``None`` means unrestricted, which only the
    static default profile uses. An empty list means nothing is allowed.
    """

    name: str
    model: str
    system_prompt: str
    temperature: float = 0.7
    tools: list[str] | None = field(default_factory=list)
    experts: list[str] | None = field(default_factory=list)
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "tools": list(self.tools or []),
            "experts": list(self.experts or []),
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class ModelEntry:
    """Runtime-editable model credentials."""

    name: str
    api_key: str | None = None
    base_url: str | None = None
    created_at: str | None = None


@dataclass(slots=True)
class UserProfile:
    user_id: str
    name: str | None
    timezone: str
    created_at: str


@dataclass(slots=True)
class Fact:
    id: int
    user_id: str
    fact: str
    created_at: str


@dataclass(slots=True)
class ScheduledTask:
    """Represents a persisted cron task."""

    id: int
    user_id: str
    conversation_id: str
    task: str
    cron: str
    origin: str
    route_id: str | None
    active: bool
    created_at: str
    last_run_at: str | None = None


@dataclass(slots=True)
class AgentResult:
    """What the conversation loop hands back to the calling layer."""

    text: str
    model: str
    usage: Usage = field(default_factory=Usage)
    latency_ms: int = 0
    rounds: int = 0
    error: bool = False


def safe_json_loads(raw: str | None) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
