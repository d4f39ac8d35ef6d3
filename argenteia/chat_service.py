"""Calling layer between channels and the agent runtime."""

from __future__ import annotations

import logging

from argenteia.agent_runtime import AgentObserver, AgentRequest, AgentRuntime
from argenteia.commands import CommandDispatcher
from argenteia.db import Database
from argenteia.models import AgentResult, InboundMessage

LOGGER = logging.getLogger(__name__)

EMPTY_REPLY = "(El modelo no devolvió texto.)"


class ChatService:
    """Runs commands or agent turns and mirrors them into the durable log."""

    def __init__(self, runtime: AgentRuntime, db: Database, commands: CommandDispatcher) -> None:
        self._runtime = runtime
        self._db = db
        self._commands = commands

    async def run_command(self, message: InboundMessage) -> str | None:
        return await self._commands.dispatch(message)

    async def handle(
        self,
        message: InboundMessage,
        observer: AgentObserver | None = None,
        expert_name: str | None = None,
        model: str | None = None,
    ) -> AgentResult:
        """Persist the user message, run the agent and persist its reply."""

        chat = self._ensure_chat(message, expert_name)
        expert_name = expert_name or chat.get("expert_name")

        self._db.persist(
            message.conversation_id, message.sender_id, "user", message.text, message.origin, expert_name
        )
        result = await self._runtime.respond(
            AgentRequest(
                conversation_id=message.conversation_id,
                text=message.text,
                origin=message.origin,
                user_id=message.sender_id,
                expert_name=expert_name,
                model=model or self._commands.model_for(message.conversation_id),
                route_id=message.route_id,
                is_group=message.is_group,
            ),
            observer,
        )
        if not result.text:
            result.text = EMPTY_REPLY
        if self._db.get_chat(message.conversation_id) is None:
            # Deleted while the turn was running.
            LOGGER.info("Chat %s was deleted mid-turn, discarding its reply", message.conversation_id)
            self._runtime.forget(message.conversation_id)
            return result
        self._db.persist(
            message.conversation_id, message.sender_id, "assistant", result.text, message.origin, expert_name
        )
        self._db.touch_chat(message.conversation_id)
        return result

    async def reply(self, message: InboundMessage, observer: AgentObserver | None = None) -> str:
        """Text-only entry point used by bot channels and the scheduler."""

        command_reply = await self.run_command(message)
        if command_reply is not None:
            return command_reply
        result = await self.handle(message, observer)
        return result.text

    def _ensure_chat(self, message: InboundMessage, expert_name: str | None) -> dict:
        if message.origin != "web":
            return self._db.get_or_create_channel_chat(message.sender_id, message.origin, message.conversation_id)
        chat = self._db.get_chat(message.conversation_id)
        if chat is None:
            LOGGER.info("Creating chat %s on first message", message.conversation_id)
            chat = self._db.create_chat(
                message.sender_id,
                title=message.text[:40],
                origin=message.origin,
                expert_name=expert_name,
                chat_id=message.conversation_id,
            )
        return chat
