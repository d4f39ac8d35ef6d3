"""FastAPI gateway exposing the assistant over WebSocket.

Endpoints
---------
GET    /health    Health / readiness check.
WS     /ws        Chat protocol (see ``argenteia.protocol``).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from argenteia.agent_runtime import AgentObserver
from argenteia.chat_service import ChatService
from argenteia.config import Settings
from argenteia.db import Database
from argenteia.models import ExpertProfile, InboundMessage, ModelEntry
from argenteia.protocol import (
    ActionLogMessage,
    AssistantChunkMessage,
    AssistantMessage,
    ChatHistoryMessage,
    ChatUpdateMessage,
    CommandResultMessage,
    ErrorMessage,
    ExpertUpdateMessage,
    IdentifyMessage,
    ListChatsMessage,
    ListExpertsMessage,
    ListModelsMessage,
    ModelUpdateMessage,
    StatusMessage,
    SwitchChatMessage,
    TypingMessage,
    UserMessage,
    parse_client_message,
)
from argenteia.session import ActiveConversations, SessionStore
from argenteia.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_WEB_USER = "web-user"


class _Connection:
    """Per-socket outbound queue drained by a single writer task.

    ``send`` never awaits, so it is safe to call from observer callbacks.
    Once the socket is gone further sends are dropped.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self.closed = False
        self.user_id = DEFAULT_WEB_USER
        self.chat_id: str | None = None

    def send(self, message: BaseModel) -> None:
        if self.closed:
            return
        self._queue.put_nowait(message.model_dump())

    async def pump(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                await self._websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError):
                self.closed = True
                return

    def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class _SocketObserver(AgentObserver):
    def __init__(self, connection: _Connection, chat_id: str) -> None:
        self._connection = connection
        self._chat_id = chat_id

    def on_typing(self, active: bool) -> None:
        self._connection.send(TypingMessage(chat_id=self._chat_id, active=active))

    def on_action(self, note: str) -> None:
        self._connection.send(ActionLogMessage(chat_id=self._chat_id, note=note))

    def on_chunk(self, delta: str) -> None:
        self._connection.send(AssistantChunkMessage(chat_id=self._chat_id, delta=delta))


class Gateway:
    """Handles decoded client frames for one process."""

    def __init__(
        self,
        service: ChatService,
        db: Database,
        settings: Settings,
        sessions: SessionStore,
        tool_registry: ToolRegistry,
        active: ActiveConversations,
    ) -> None:
        self._service = service
        self._db = db
        self._settings = settings
        self._sessions = sessions
        self._tool_registry = tool_registry
        self._active = active
        self._turns: set[asyncio.Task[None]] = set()

    async def handle(self, conn: _Connection, message: Any) -> None:
        if isinstance(message, IdentifyMessage):
            self._identify(conn, message)
        elif isinstance(message, UserMessage):
            await self._user_message(conn, message)
        elif isinstance(message, SwitchChatMessage):
            conn.chat_id = message.chat_id
            conn.send(ChatHistoryMessage(chat_id=message.chat_id, messages=self._db.get_messages(message.chat_id)))
        elif isinstance(message, ChatUpdateMessage):
            self._chat_update(conn, message)
        elif isinstance(message, ExpertUpdateMessage):
            self._expert_update(conn, message)
        elif isinstance(message, ModelUpdateMessage):
            self._model_update(conn, message)

    def status(self, user_id: str) -> StatusMessage:
        return StatusMessage(
            user_id=user_id,
            model=self._settings.agent.model,
            tools=self._tool_registry.enabled_names(),
            processing=sorted(self._active.snapshot()),
        )

    def _identify(self, conn: _Connection, message: IdentifyMessage) -> None:
        conn.user_id = message.user_id
        if message.name and self._db.get_user(message.user_id) is None:
            self._db.upsert_user(message.user_id, message.name, self._settings.default_timezone)
        conn.send(self.status(conn.user_id))
        conn.send(ListChatsMessage(chats=self._db.list_chats(conn.user_id)))
        conn.send(self._experts())

    async def _user_message(self, conn: _Connection, message: UserMessage) -> None:
        chat_id = message.chat_id or conn.chat_id or str(uuid.uuid4())
        conn.chat_id = chat_id
        inbound = InboundMessage(
            conversation_id=chat_id,
            sender_id=conn.user_id,
            text=message.text,
            timestamp=datetime.now(timezone.utc),
            origin="web",
        )

        command_reply = await self._service.run_command(inbound)
        if command_reply is not None:
            conn.send(CommandResultMessage(chat_id=chat_id, text=command_reply))
            return

        # Turns run detached so one socket can drive several chats at once.
        task = asyncio.create_task(self._run_turn(conn, inbound, message))
        self._turns.add(task)
        task.add_done_callback(self._turns.discard)

    async def _run_turn(self, conn: _Connection, inbound: InboundMessage, message: UserMessage) -> None:
        chat_id = inbound.conversation_id
        try:
            result = await self._service.handle(
                inbound,
                _SocketObserver(conn, chat_id),
                expert_name=message.expert_name,
                model=message.model,
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("Turn for chat %s failed", chat_id)
            conn.send(ErrorMessage(message="Error interno al procesar el mensaje."))
            return
        conn.send(
            AssistantMessage(
                chat_id=chat_id,
                text=result.text,
                model=result.model,
                usage=result.usage.as_dict(),
                latency_ms=result.latency_ms,
                error=result.error,
            )
        )
        conn.send(ListChatsMessage(chats=self._db.list_chats(conn.user_id)))

    def _chat_update(self, conn: _Connection, message: ChatUpdateMessage) -> None:
        if message.action == "create":
            chat = self._db.create_chat(conn.user_id, title=message.title, expert_name=message.expert_name)
            conn.chat_id = chat["id"]
        elif message.chat_id is None:
            conn.send(ErrorMessage(message=f"chat_id es obligatorio para '{message.action}'."))
            return
        elif message.action == "rename":
            self._db.rename_chat(message.chat_id, message.title or "Sin título")
        elif message.action == "delete":
            self._db.delete_chat(message.chat_id)
            self._sessions.reset(message.chat_id)
            if conn.chat_id == message.chat_id:
                conn.chat_id = None
        elif message.action == "pin":
            self._db.toggle_pin(message.chat_id)
        conn.send(ListChatsMessage(chats=self._db.list_chats(conn.user_id)))

    def _expert_update(self, conn: _Connection, message: ExpertUpdateMessage) -> None:
        if message.action == "upsert":
            if message.expert is None:
                conn.send(ErrorMessage(message="Falta el experto a guardar."))
                return
            self._db.upsert_expert(ExpertProfile(**message.expert.model_dump()))
        elif message.action == "delete":
            if not message.name:
                conn.send(ErrorMessage(message="Falta el nombre del experto."))
                return
            self._db.delete_expert(message.name)
        conn.send(self._experts())

    def _model_update(self, conn: _Connection, message: ModelUpdateMessage) -> None:
        if message.action == "upsert":
            if message.model is None:
                conn.send(ErrorMessage(message="Falta el modelo a guardar."))
                return
            self._db.upsert_model(ModelEntry(**message.model.model_dump()))
        elif message.action == "delete":
            if not message.name:
                conn.send(ErrorMessage(message="Falta el nombre del modelo."))
                return
            self._db.delete_model(message.name)
        models = [
            {"name": m.name, "base_url": m.base_url, "has_api_key": bool(m.api_key), "created_at": m.created_at}
            for m in self._db.list_models()
        ]
        conn.send(ListModelsMessage(models=models))

    def _experts(self) -> ListExpertsMessage:
        return ListExpertsMessage(experts=[e.to_dict() for e in self._db.list_experts(include_general=True)])


def create_app(gateway: Gateway) -> FastAPI:
    """Build the FastAPI application around a configured gateway."""

    app = FastAPI(title="ARGenteIA gateway")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "processing": len(gateway.status(DEFAULT_WEB_USER).processing)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        conn = _Connection(websocket)
        writer = asyncio.create_task(conn.pump())
        conn.send(gateway.status(conn.user_id))
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = parse_client_message(raw)
                except ValidationError as exc:
                    LOGGER.warning("Rejected client frame: %s", exc.errors()[:1])
                    conn.send(ErrorMessage(message="Mensaje inválido."))
                    continue
                await gateway.handle(conn, message)
        except WebSocketDisconnect:
            LOGGER.info("Client %s disconnected", conn.user_id)
        finally:
            conn.close()
            await writer

    return app
