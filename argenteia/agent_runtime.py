"""Core agent runtime: bounded tool-calling rounds with model fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from argenteia.config import Settings
from argenteia.db import Database
from argenteia.errors import AllModelsExhausted, NoCredentials, ProviderError, RateLimited
from argenteia.llm.base import LLMProvider
from argenteia.llm.resolver import ModelResolver
from argenteia.models import (
    GENERAL_EXPERT,
    AgentResult,
    ChatMessage,
    ExpertProfile,
    LLMResponse,
    ToolCall,
    ToolContext,
    Usage,
)
from argenteia.prompt import SystemPromptBuilder
from argenteia.session import ActiveConversations, SessionStore
from argenteia.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

APOLOGY_TEMPLATE = (
    "Lo siento, no pude obtener una respuesta de ningún modelo ({error}). "
    "Por favor, intenta de nuevo o usa /reset para reiniciar la conversación."
)

ROUND_LIMIT_INSTRUCTION = (
    "Alcanzaste el límite de pasos con herramientas. Responde ahora al usuario con la "
    "información que ya tienes, sin llamar a más herramientas."
)


@dataclass(slots=True)
class AgentRequest:
    """One user turn submitted by a channel."""

    conversation_id: str
    text: str
    origin: str = "web"
    user_id: str = "default"
    expert_name: str | None = None
    model: str | None = None
    route_id: str | None = None
    is_group: bool = False


class AgentObserver:
    """Progress callbacks for a turn. Every method is optional and side-effect only."""

    def on_typing(self, active: bool) -> None:
        pass

    def on_action(self, note: str) -> None:
        pass

    def on_chunk(self, delta: str) -> None:
        pass


@dataclass(slots=True)
class _Outcome:
    text: str
    messages: list[ChatMessage]
    usage: Usage
    rounds: int


@dataclass(slots=True)
class _Attempt:
    model: str
    reason: str
    fallback: bool = True


class AgentRuntime:
    """Drives a conversation turn against an ordered list of candidate models.

    The runtime only touches the in-memory session history; durable
    persistence is left to the calling layer.
    """

    def __init__(
        self,
        settings: Settings,
        tool_registry: ToolRegistry,
        sessions: SessionStore,
        db: Database,
        resolver: ModelResolver,
        prompt_builder: SystemPromptBuilder | None = None,
        active: ActiveConversations | None = None,
    ) -> None:
        self._settings = settings
        self._tool_registry = tool_registry
        self._sessions = sessions
        self._db = db
        self._resolver = resolver
        self._prompt_builder = prompt_builder or SystemPromptBuilder()
        self._active = active or ActiveConversations()

    @property
    def active(self) -> ActiveConversations:
        return self._active

    def forget(self, conversation_id: str) -> None:
        """Drop the in-memory history of a conversation."""

        self._sessions.reset(conversation_id)

    async def respond(self, request: AgentRequest, observer: AgentObserver | None = None) -> AgentResult:
        """Run a turn and always return a result, rendering total failure as an apology."""

        try:
            return await self.run(request, observer)
        except AllModelsExhausted as exc:
            LOGGER.error("Conversation %s: %s", request.conversation_id, exc)
            error = exc
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Conversation %s failed unexpectedly", request.conversation_id)
            error = exc
        return AgentResult(
            text=APOLOGY_TEMPLATE.format(error=error),
            model=request.model or self._settings.agent.model,
            error=True,
        )

    async def run(self, request: AgentRequest, observer: AgentObserver | None = None) -> AgentResult:
        """Run one user turn.

        Raises:
            AllModelsExhausted: no candidate model produced a usable answer.
        """
        observer = observer or AgentObserver()
        started = time.monotonic()
        max_size = self._settings.agent.max_context_messages
        cid = request.conversation_id

        self._active.add(cid)
        _notify(observer.on_typing, True)
        try:
            profile = self._resolve_profile(request.expert_name)
            self._sessions.append(cid, ChatMessage(role="user", content=request.text), max_size)
            history = self._sessions.get_history(cid)

            attempts: list[_Attempt] = []
            for model_key in self._candidates(request.model or profile.model):
                if attempts:
                    _notify(observer.on_action, f"Probando con el modelo {model_key}")
                try:
                    outcome = await self._run_candidate(model_key, profile, request, history, observer)
                except (ProviderError, NoCredentials) as exc:
                    LOGGER.warning("Model %s failed: %s", model_key, exc)
                    attempt = _Attempt(model_key, str(exc), exc.fallback_eligible)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.exception("Model %s failed unexpectedly", model_key)
                    attempt = _Attempt(model_key, str(exc), fallback=False)
                else:
                    if outcome is None:
                        LOGGER.warning("Model %s returned no answer", model_key)
                        attempt = _Attempt(model_key, "sin respuesta")
                    else:
                        self._sessions.extend(cid, outcome.messages, max_size)
                        latency_ms = int((time.monotonic() - started) * 1000)
                        LOGGER.info(
                            "Conversation %s answered by %s in %d round(s), %d ms",
                            cid,
                            model_key,
                            outcome.rounds,
                            latency_ms,
                        )
                        return AgentResult(
                            text=outcome.text,
                            model=model_key,
                            usage=outcome.usage,
                            latency_ms=latency_ms,
                            rounds=outcome.rounds,
                        )
                attempts.append(attempt)
                if not attempt.fallback:
                    break
            raise AllModelsExhausted([(a.model, a.reason) for a in attempts])
        finally:
            _notify(observer.on_typing, False)
            self._active.discard(cid)

    async def _run_candidate(
        self,
        model_key: str,
        profile: ExpertProfile,
        request: AgentRequest,
        history: list[ChatMessage],
        observer: AgentObserver,
    ) -> _Outcome | None:
        client = self._resolver.create_client(model_key)
        tools = self._tool_specs(profile)
        tool_names = [spec["function"]["name"] for spec in tools]
        system = ChatMessage(role="system", content=self._system_prompt(profile, tool_names, request))
        context = ToolContext(
            session_id=request.conversation_id,
            user_id=request.user_id,
            origin=request.origin,
            route_id=request.route_id,
            is_group=request.is_group,
            expert_name=profile.name,
            allowed_experts=None if profile.experts is None else list(profile.experts),
        )

        turn: list[ChatMessage] = []
        usage = Usage()
        max_rounds = self._settings.agent.max_rounds
        for round_no in range(1, max_rounds + 1):
            response = await self._complete(
                client, [system, *history, *turn], tools or None, profile.temperature, observer
            )
            usage.add(response.usage)
            turn.append(ChatMessage(role="assistant", content=response.content, tool_calls=response.tool_calls))

            if not response.tool_calls:
                if response.content:
                    return _Outcome(response.content, turn, usage, round_no)
                return None

            results = await asyncio.gather(
                *(self._execute_tool(call, context, observer) for call in response.tool_calls)
            )
            turn.extend(
                ChatMessage(role="tool", content=result, tool_call_id=call.id)
                for call, result in zip(response.tool_calls, results)
            )

        LOGGER.warning("Round limit of %d reached on %s, requesting final answer", max_rounds, model_key)
        closing = ChatMessage(role="system", content=ROUND_LIMIT_INSTRUCTION)
        response = await self._complete(
            client, [system, *history, *turn, closing], None, profile.temperature, observer
        )
        usage.add(response.usage)
        turn.append(ChatMessage(role="assistant", content=response.content))
        return _Outcome(response.content, turn, usage, max_rounds + 1)

    async def _complete(
        self,
        client: LLMProvider,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None,
        temperature: float,
        observer: AgentObserver,
    ) -> LLMResponse:
        """Single streamed request; 429 is retried with exponential backoff."""

        wire = [m.to_wire() for m in messages]
        retries = self._settings.agent.rate_limit_retries
        delay = self._settings.agent.rate_limit_backoff_seconds
        attempt = 0
        while True:
            try:
                # Timeouts are per read inside the transport; a stream that keeps
                # producing deltas is never cut off.
                return await client.stream(
                    wire,
                    tools=tools,
                    temperature=temperature,
                    max_tokens=self._settings.agent.max_tokens,
                    on_delta=lambda delta: _notify(observer.on_chunk, delta),
                )
            except RateLimited:
                if attempt >= retries:
                    raise
                attempt += 1
                LOGGER.warning("Rate limited by %s, retry %d/%d in %.1fs", client.model, attempt, retries, delay)
                await asyncio.sleep(delay)
                delay *= 2

    async def _execute_tool(self, call: ToolCall, context: ToolContext, observer: AgentObserver) -> str:
        arguments = call.parsed_arguments()
        if call.arguments.strip() and not arguments and call.arguments.strip() != "{}":
            LOGGER.warning("Malformed arguments for %s, using {}: %r", call.name, call.arguments[:200])
        LOGGER.info("Tool call %s(%s)", call.name, arguments)
        _notify(observer.on_action, f"Ejecutando herramienta: {call.name}")
        return await self._tool_registry.dispatch(call.name, arguments, context)

    def _resolve_profile(self, expert_name: str | None) -> ExpertProfile:
        if expert_name:
            profile = self._db.get_expert(expert_name)
            if profile is not None:
                return profile
            LOGGER.warning("Expert %r not found, using the general profile", expert_name)
        general = self._db.get_expert(GENERAL_EXPERT)
        if general is not None:
            return general
        agent = self._settings.agent
        return ExpertProfile(
            name=GENERAL_EXPERT,
            model=agent.model,
            system_prompt=agent.system_prompt,
            temperature=agent.temperature,
            tools=None,
            experts=None,
        )

    def _candidates(self, primary: str) -> list[str]:
        return [primary, *(m for m in self._resolver.configured_models() if m != primary)]

    def _tool_specs(self, profile: ExpertProfile) -> list[dict[str, Any]]:
        if profile.tools is None:
            return self._tool_registry.list_enabled()
        return self._tool_registry.list_enabled(set(profile.tools))

    def _system_prompt(self, profile: ExpertProfile, tool_names: list[str], request: AgentRequest) -> str:
        peers = [
            e
            for e in self._db.list_experts()
            if e.name != profile.name and (profile.experts is None or e.name in profile.experts)
        ]
        return self._prompt_builder.build(
            base=profile.system_prompt,
            tool_names=tool_names,
            user=self._db.get_user(request.user_id),
            facts=self._db.get_facts(request.user_id),
            peers=peers,
            origin=request.origin,
        )


def _notify(callback: Callable[..., None], *args: Any) -> None:
    try:
        callback(*args)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Observer callback %s failed", getattr(callback, "__name__", callback))
