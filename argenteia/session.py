"""In-memory, size-bounded conversation working set."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from argenteia.models import ChatMessage


class SessionStore:
    """Per-conversation message buffers truncated oldest-first."""

    def __init__(self) -> None:
        self._sessions: dict[str, list[ChatMessage]] = {}

    def get_history(self, conversation_id: str) -> list[ChatMessage]:
        """Return the retained messages, oldest first.

        Leading tool results whose assistant turn was evicted are skipped so
        every tool message sent to a model still follows its tool call.
        """
        history = self._sessions.get(conversation_id, [])
        start = 0
        while start < len(history) and history[start].role == "tool":
            start += 1
        return list(history[start:])

    def append(self, conversation_id: str, message: ChatMessage, max_size: int) -> None:
        self.extend(conversation_id, [message], max_size)

    def extend(self, conversation_id: str, messages: Iterable[ChatMessage], max_size: int) -> None:
        history = self._sessions.setdefault(conversation_id, [])
        history.extend(messages)
        if len(history) > max_size:
            del history[: len(history) - max_size]

    def reset(self, conversation_id: str) -> None:
        self._sessions[conversation_id] = []

    def size(self, conversation_id: str) -> int:
        return len(self._sessions.get(conversation_id, []))

    def count(self) -> int:
        return len(self._sessions)


class ActiveConversations:
    """Advisory set of conversation ids currently being processed.

    Used for observability only; membership never blocks a new turn.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: set[str] = set()

    def add(self, conversation_id: str) -> None:
        with self._lock:
            self._ids.add(conversation_id)

    def discard(self, conversation_id: str) -> None:
        with self._lock:
            self._ids.discard(conversation_id)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ids)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._ids
