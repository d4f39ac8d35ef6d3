"""WebSocket gateway message schemas."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

# ---------------------------------------------------------------------------
# Client -> server
# ---------------------------------------------------------------------------


class IdentifyMessage(BaseModel):
    type: Literal["identify"] = "identify"
    user_id: str
    name: str | None = None


class UserMessage(BaseModel):
    type: Literal["user_message"] = "user_message"
    text: str
    chat_id: str | None = None
    expert_name: str | None = None
    model: str | None = None


class SwitchChatMessage(BaseModel):
    type: Literal["switch_chat"] = "switch_chat"
    chat_id: str


class ChatUpdateMessage(BaseModel):
    type: Literal["chat_update"] = "chat_update"
    action: Literal["create", "rename", "delete", "pin"]
    chat_id: str | None = None
    title: str | None = None
    expert_name: str | None = None


class ExpertPayload(BaseModel):
    name: str
    model: str
    system_prompt: str
    temperature: float = 0.7
    tools: list[str] = Field(default_factory=list)
    experts: list[str] = Field(default_factory=list)


class ExpertUpdateMessage(BaseModel):
    type: Literal["expert_update"] = "expert_update"
    action: Literal["list", "upsert", "delete"]
    expert: ExpertPayload | None = None
    name: str | None = None


class ModelPayload(BaseModel):
    name: str
    api_key: str | None = None
    base_url: str | None = None


class ModelUpdateMessage(BaseModel):
    type: Literal["model_update"] = "model_update"
    action: Literal["list", "upsert", "delete"]
    model: ModelPayload | None = None
    name: str | None = None


ClientMessage = Annotated[
    Union[
        IdentifyMessage,
        UserMessage,
        SwitchChatMessage,
        ChatUpdateMessage,
        ExpertUpdateMessage,
        ModelUpdateMessage,
    ],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> Any:
    """Validate a JSON frame into one of the client message models.

    Raises:
        pydantic.ValidationError: unknown ``type`` or missing fields.
    """
    return CLIENT_MESSAGE_ADAPTER.validate_json(raw)


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------


class StatusMessage(BaseModel):
    type: Literal["status"] = "status"
    user_id: str
    model: str
    tools: list[str]
    processing: list[str] = Field(default_factory=list)


class TypingMessage(BaseModel):
    type: Literal["typing"] = "typing"
    chat_id: str
    active: bool


class ActionLogMessage(BaseModel):
    type: Literal["action_log"] = "action_log"
    chat_id: str
    note: str


class AssistantChunkMessage(BaseModel):
    type: Literal["assistant_chunk"] = "assistant_chunk"
    chat_id: str
    delta: str


class AssistantMessage(BaseModel):
    type: Literal["assistant_message"] = "assistant_message"
    chat_id: str
    text: str
    model: str
    usage: dict[str, int] = Field(default_factory=dict)
    latency_ms: int = 0
    error: bool = False


class CommandResultMessage(BaseModel):
    type: Literal["command_result"] = "command_result"
    chat_id: str
    text: str


class ChatHistoryMessage(BaseModel):
    type: Literal["chat_history"] = "chat_history"
    chat_id: str
    messages: list[dict[str, Any]]


class ListChatsMessage(BaseModel):
    type: Literal["list_chats"] = "list_chats"
    chats: list[dict[str, Any]]


class ListExpertsMessage(BaseModel):
    type: Literal["list_experts"] = "list_experts"
    experts: list[dict[str, Any]]


class ListModelsMessage(BaseModel):
    type: Literal["list_models"] = "list_models"
    models: list[dict[str, Any]]


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str
