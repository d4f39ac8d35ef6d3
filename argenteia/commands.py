"""Command dispatcher for slash-prefixed messages.

Commands bypass the model. An unrecognised /command returns None, letting it
fall through to the agent.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from argenteia.models import InboundMessage

if TYPE_CHECKING:
    from argenteia.config import Settings
    from argenteia.llm.resolver import ModelResolver
    from argenteia.session import ActiveConversations, SessionStore
    from argenteia.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split a /-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid /command.
    """
    text = text.strip()
    if not text.startswith("/"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandDispatcher:
    """Routes /reset, /status, /tools and /model without calling a model."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        tool_registry: ToolRegistry,
        resolver: ModelResolver,
        active: ActiveConversations,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._tool_registry = tool_registry
        self._resolver = resolver
        self._active = active
        self._model_overrides: dict[str, str] = {}

    def model_for(self, conversation_id: str) -> str | None:
        """Model selected with /model for this conversation, if any."""

        return self._model_overrides.get(conversation_id)

    async def dispatch(self, message: InboundMessage) -> str | None:
        """Dispatch a message to a command handler.

        Returns:
            A reply string for recognised commands, or None for unknown ones.
        """
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        if command == "reset":
            return self._handle_reset(message.conversation_id)
        if command == "status":
            return self._handle_status(message.conversation_id)
        if command == "tools":
            return self._handle_tools()
        if command == "model":
            return self._handle_model(message.conversation_id, args)
        return None

    def _handle_reset(self, conversation_id: str) -> str:
        self._sessions.reset(conversation_id)
        return "Conversación reiniciada. Empecemos de nuevo."

    def _handle_status(self, conversation_id: str) -> str:
        model = self.model_for(conversation_id) or self._settings.agent.model
        return "\n".join(
            [
                "Estado del asistente:",
                f"- Modelo: {model}",
                f"- Mensajes en contexto: {self._sessions.size(conversation_id)}"
                f"/{self._settings.agent.max_context_messages}",
                f"- Conversaciones en memoria: {self._sessions.count()}",
                f"- Conversaciones procesándose: {len(self._active.snapshot())}",
                f"- Herramientas activas: {len(self._tool_registry.enabled_names())}",
            ]
        )

    def _handle_tools(self) -> str:
        names = self._tool_registry.enabled_names()
        if not names:
            return "No hay herramientas habilitadas."
        return "Herramientas habilitadas:\n" + "\n".join(f"- {name}" for name in names)

    def _handle_model(self, conversation_id: str, args: list[str]) -> str:
        available = self._resolver.configured_models()
        if not args:
            current = self.model_for(conversation_id) or self._settings.agent.model
            listing = "\n".join(f"- {m}" for m in available) or "- (ninguno configurado)"
            return f"Modelo actual: {current}\nModelos configurados:\n{listing}\nUso: /model <modelo>"

        model_key = args[0]
        if model_key == "default":
            self._model_overrides.pop(conversation_id, None)
            return f"Modelo restablecido a {self._settings.agent.model}."
        self._model_overrides[conversation_id] = model_key
        if model_key not in available:
            return f"Modelo cambiado a {model_key} (no figura en la configuración estática)."
        return f"Modelo cambiado a {model_key}."
