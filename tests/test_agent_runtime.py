from __future__ import annotations

import asyncio
from typing import Any

import pytest

from argenteia.agent_runtime import ROUND_LIMIT_INSTRUCTION, AgentObserver, AgentRequest, AgentRuntime
from argenteia.config import AgentSettings, Settings
from argenteia.db import Database
from argenteia.errors import AllModelsExhausted, AuthError, NoCredentials, ProviderError, RateLimited
from argenteia.experts import ExpertRunner
from argenteia.llm.base import LLMProvider
from argenteia.models import ExpertProfile, LLMResponse, ToolCall, ToolContext, Usage
from argenteia.session import SessionStore
from argenteia.tools.base import Tool
from argenteia.tools.expert_tool import CallExpertTool
from argenteia.tools.registry import ToolRegistry

MODELS = ["openrouter/a", "openrouter/b", "openrouter/c"]


class ScriptedProvider(LLMProvider):
    """Replays responses (or raises errors) in order; the last step repeats."""

    def __init__(self, model: str, *script: LLMResponse | Exception) -> None:
        self.model = model
        self._script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def stream(self, messages, tools=None, temperature=0.7, max_tokens=None, on_delta=None):  # noqa: ANN001, ANN201
        self.calls.append({"messages": messages, "tools": tools, "temperature": temperature})
        step = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(step, Exception):
            raise step
        if on_delta is not None and step.content:
            for piece in step.content.split(" "):
                on_delta(piece)
        return step


class FakeResolver:
    def __init__(self, clients: dict[str, LLMProvider], order: list[str] | None = None) -> None:
        self._clients = clients
        self._order = order or list(clients)
        self.created: list[str] = []

    def configured_models(self) -> list[str]:
        return list(self._order)

    def create_client(self, model_key: str) -> LLMProvider:
        self.created.append(model_key)
        if model_key not in self._clients:
            raise NoCredentials(model_key)
        return self._clients[model_key]


class WeatherTool(Tool):
    name = "get_weather"
    description = "Clima actual"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"location": {"type": "string"}},
        "additionalProperties": False,
    }

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        return f"{kwargs.get('location', '?')}: soleado 22°C"


class RecordingObserver(AgentObserver):
    def __init__(self) -> None:
        self.typing: list[bool] = []
        self.actions: list[str] = []
        self.chunks: list[str] = []

    def on_typing(self, active: bool) -> None:
        self.typing.append(active)

    def on_action(self, note: str) -> None:
        self.actions.append(note)

    def on_chunk(self, delta: str) -> None:
        self.chunks.append(delta)


def _settings(**agent: Any) -> Settings:
    agent.setdefault("model", MODELS[0])
    agent.setdefault("rate_limit_backoff_seconds", 0)
    return Settings(
        agent=AgentSettings(**agent),
        models={name: {"api_key": "sk-test"} for name in MODELS},
    )


def _db(tmp_path) -> Database:  # noqa: ANN001
    db = Database(tmp_path / "argenteia.db")
    db.initialize()
    return db


def _runtime(tmp_path, resolver: FakeResolver, registry: ToolRegistry | None = None, **agent: Any):  # noqa: ANN001, ANN201
    sessions = SessionStore()
    db = _db(tmp_path)
    runtime = AgentRuntime(
        settings=_settings(**agent),
        tool_registry=registry or ToolRegistry(),
        sessions=sessions,
        db=db,
        resolver=resolver,
    )
    return runtime, sessions, db


def _request(text: str = "hola", **kwargs: Any) -> AgentRequest:
    return AgentRequest(conversation_id="chat-1", text=text, user_id="user-1", **kwargs)


def _weather_call(call_id: str = "call_1", arguments: str = '{"location": "Madrid"}') -> ToolCall:
    return ToolCall(id=call_id, name="get_weather", arguments=arguments)


@pytest.mark.asyncio
async def test_simple_question_answered_in_one_round(tmp_path):
    provider = ScriptedProvider("a", LLMResponse(content="En Tokio son las 21:00.", usage=Usage(10, 5, 15)))
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))

    result = await runtime.run(_request("¿Qué hora es en Tokio?"))

    assert result.text == "En Tokio son las 21:00."
    assert result.model == MODELS[0]
    assert result.rounds == 1
    assert result.usage.total_tokens == 15
    assert len(provider.calls) == 1
    assert provider.calls[0]["tools"] is None
    history = sessions.get_history("chat-1")
    assert [m.role for m in history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_tool_round_trip_appends_four_history_entries(tmp_path):
    registry = ToolRegistry()
    weather = WeatherTool()
    registry.register(weather)
    provider = ScriptedProvider(
        "a",
        LLMResponse(content="", tool_calls=[_weather_call()]),
        LLMResponse(content="En Madrid hace sol y 22°C."),
    )
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry)

    result = await runtime.run(_request("¿Qué tiempo hace en Madrid?"))

    assert result.text == "En Madrid hace sol y 22°C."
    assert weather.calls == [{"location": "Madrid"}]
    history = sessions.get_history("chat-1")
    assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
    assert history[1].tool_calls[0].id == "call_1"
    assert history[2].tool_call_id == "call_1"
    assert history[2].content == "Madrid: soleado 22°C"

    second_request = provider.calls[1]["messages"]
    assert second_request[-2]["tool_calls"][0] == {
        "id": "call_1",
        "type": "function",
        "function": {"name": "get_weather", "arguments": '{"location": "Madrid"}'},
    }
    assert second_request[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "Madrid: soleado 22°C"}


@pytest.mark.asyncio
async def test_fallback_tries_next_model_in_configured_order(tmp_path):
    a = ScriptedProvider("a", AuthError("invalid key", status_code=401))
    b = ScriptedProvider("b", LLMResponse(content="respuesta de B"))
    c = ScriptedProvider("c", LLMResponse(content="respuesta de C"))
    resolver = FakeResolver({MODELS[0]: a, MODELS[1]: b, MODELS[2]: c})
    runtime, _, _ = _runtime(tmp_path, resolver)
    observer = RecordingObserver()

    result = await runtime.run(_request(), observer)

    assert result.model == MODELS[1]
    assert result.text == "respuesta de B"
    assert resolver.created == [MODELS[0], MODELS[1]]
    assert c.calls == []
    assert any(MODELS[1] in note for note in observer.actions)


@pytest.mark.asyncio
async def test_requested_model_goes_first_then_remaining_in_order(tmp_path):
    a = ScriptedProvider("a", LLMResponse(content="A"))
    b = ScriptedProvider("b", AuthError("nope", status_code=401))
    c = ScriptedProvider("c", LLMResponse(content="C"))
    resolver = FakeResolver({MODELS[0]: a, MODELS[1]: b, MODELS[2]: c})
    runtime, _, _ = _runtime(tmp_path, resolver)

    result = await runtime.run(_request(model=MODELS[1]))

    assert resolver.created == [MODELS[1], MODELS[0]]
    assert result.model == MODELS[0]


@pytest.mark.asyncio
async def test_missing_credentials_fall_back(tmp_path):
    b = ScriptedProvider("b", LLMResponse(content="ok"))
    resolver = FakeResolver({MODELS[1]: b}, order=MODELS)
    runtime, _, _ = _runtime(tmp_path, resolver)

    result = await runtime.run(_request())

    assert result.model == MODELS[1]


@pytest.mark.asyncio
async def test_round_limit_terminates_with_one_extra_tool_free_request(tmp_path):
    registry = ToolRegistry()
    registry.register(WeatherTool())
    provider = ScriptedProvider(
        "a",
        *[LLMResponse(content="", tool_calls=[_weather_call(f"call_{i}")]) for i in range(3)],
        LLMResponse(content="Resumen final."),
    )
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry, max_rounds=3)

    result = await runtime.run(_request())

    assert len(provider.calls) == 4
    assert provider.calls[-1]["tools"] is None
    assert provider.calls[-1]["messages"][-1] == {"role": "system", "content": ROUND_LIMIT_INSTRUCTION}
    assert result.text == "Resumen final."
    assert result.rounds == 4


@pytest.mark.asyncio
async def test_round_limit_with_model_that_always_calls_tools(tmp_path):
    registry = ToolRegistry()
    registry.register(WeatherTool())
    provider = ScriptedProvider("a", LLMResponse(content="", tool_calls=[_weather_call()]))
    runtime, _, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry, max_rounds=2)

    result = await runtime.run(_request())

    assert len(provider.calls) <= 3
    assert result.text == ""


@pytest.mark.asyncio
async def test_rate_limits_on_every_model_exhaust_and_apologize(tmp_path):
    providers = {name: ScriptedProvider(name, RateLimited("slow down", status_code=429)) for name in MODELS}
    runtime, _, _ = _runtime(tmp_path, FakeResolver(providers), rate_limit_retries=3)

    with pytest.raises(AllModelsExhausted) as excinfo:
        await runtime.run(_request())

    assert [model for model, _ in excinfo.value.attempts] == MODELS
    assert all(len(p.calls) == 4 for p in providers.values())

    result = await runtime.respond(_request())
    assert result.error is True
    assert "intenta de nuevo" in result.text


@pytest.mark.asyncio
async def test_rate_limit_recovers_after_retry(tmp_path):
    provider = ScriptedProvider("a", RateLimited("slow", status_code=429), LLMResponse(content="listo"))
    runtime, _, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))

    result = await runtime.run(_request())

    assert result.text == "listo"
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_non_fallback_error_stops_trying(tmp_path):
    a = ScriptedProvider("a", ProviderError("boom", status_code=500))
    b = ScriptedProvider("b", LLMResponse(content="B"))
    runtime, _, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: a, MODELS[1]: b}))

    with pytest.raises(AllModelsExhausted) as excinfo:
        await runtime.run(_request())

    assert [model for model, _ in excinfo.value.attempts] == [MODELS[0]]
    assert b.calls == []


@pytest.mark.asyncio
async def test_empty_answer_moves_to_next_candidate(tmp_path):
    a = ScriptedProvider("a", LLMResponse(content=""))
    b = ScriptedProvider("b", LLMResponse(content="B responde"))
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: a, MODELS[1]: b}))

    result = await runtime.run(_request())

    assert result.model == MODELS[1]
    assert [m.role for m in sessions.get_history("chat-1")] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_malformed_tool_arguments_become_empty_mapping(tmp_path):
    registry = ToolRegistry()
    weather = WeatherTool()
    registry.register(weather)
    provider = ScriptedProvider(
        "a",
        LLMResponse(content="", tool_calls=[_weather_call(arguments="{invalid json")]),
        LLMResponse(content="No sé dónde estás."),
    )
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry)

    result = await runtime.run(_request())

    assert weather.calls == [{}]
    assert result.text == "No sé dónde estás."
    assert sessions.get_history("chat-1")[2].content == "?: soleado 22°C"


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_model(tmp_path):
    provider = ScriptedProvider(
        "a",
        LLMResponse(content="", tool_calls=[ToolCall(id="x", name="missing_tool", arguments="{}")]),
        LLMResponse(content="ok"),
    )
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))

    await runtime.run(_request())

    assert sessions.get_history("chat-1")[2].content == 'Error: herramienta "missing_tool" no encontrada.'


@pytest.mark.asyncio
async def test_tool_calls_in_one_round_run_concurrently(tmp_path):
    started = asyncio.Event()

    class WaitingTool(Tool):
        name = "waiter"
        description = "waits for the signaller"
        parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}

        async def run(self, context: ToolContext, **kwargs: Any) -> str:
            await asyncio.wait_for(started.wait(), timeout=1)
            return "waited"

    class SignalTool(Tool):
        name = "signaller"
        description = "releases the waiter"
        parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}

        async def run(self, context: ToolContext, **kwargs: Any) -> str:
            started.set()
            return "signalled"

    registry = ToolRegistry()
    registry.register(WaitingTool())
    registry.register(SignalTool())
    provider = ScriptedProvider(
        "a",
        LLMResponse(
            content="",
            tool_calls=[ToolCall(id="1", name="waiter", arguments="{}"), ToolCall(id="2", name="signaller")],
        ),
        LLMResponse(content="hecho"),
    )
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry)

    await runtime.run(_request())

    tool_messages = sessions.get_history("chat-1")[2:4]
    assert [(m.tool_call_id, m.content) for m in tool_messages] == [("1", "waited"), ("2", "signalled")]


@pytest.mark.asyncio
async def test_chunks_and_typing_are_forwarded_to_observer(tmp_path):
    provider = ScriptedProvider("a", LLMResponse(content="hola que tal"))
    runtime, _, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))
    observer = RecordingObserver()

    await runtime.run(_request(), observer)

    assert observer.chunks == ["hola", "que", "tal"]
    assert observer.typing == [True, False]


@pytest.mark.asyncio
async def test_failing_observer_does_not_affect_result(tmp_path):
    class BrokenObserver(AgentObserver):
        def on_chunk(self, delta: str) -> None:
            raise RuntimeError("socket gone")

    provider = ScriptedProvider("a", LLMResponse(content="sigo aquí"))
    runtime, _, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))

    result = await runtime.run(_request(), BrokenObserver())

    assert result.text == "sigo aquí"


@pytest.mark.asyncio
async def test_expert_with_empty_tool_allow_list_gets_no_tools(tmp_path):
    registry = ToolRegistry()
    registry.register(WeatherTool())
    provider = ScriptedProvider("a", LLMResponse(content="sin herramientas"))
    runtime, _, db = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry)
    db.upsert_expert(
        ExpertProfile(name="poeta", model=MODELS[0], system_prompt="Eres poeta.", temperature=0.2, tools=[])
    )

    await runtime.run(_request(expert_name="poeta"))

    call = provider.calls[0]
    assert call["tools"] is None
    assert call["temperature"] == 0.2
    assert call["messages"][0]["content"].startswith("Eres poeta.")


@pytest.mark.asyncio
async def test_expert_allow_list_scopes_tools(tmp_path):
    registry = ToolRegistry()
    registry.register(WeatherTool())
    provider = ScriptedProvider("a", LLMResponse(content="ok"))
    runtime, _, db = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}), registry)
    db.upsert_expert(
        ExpertProfile(name="clima", model=MODELS[0], system_prompt="Meteorólogo.", tools=["get_weather", "nope"])
    )

    await runtime.run(_request(expert_name="clima"))

    tools = provider.calls[0]["tools"]
    assert [t["function"]["name"] for t in tools] == ["get_weather"]


@pytest.mark.asyncio
async def test_active_set_tracks_in_flight_conversation(tmp_path):
    seen: list[bool] = []
    runtime_ref: list[AgentRuntime] = []

    class PeekingProvider(ScriptedProvider):
        async def stream(self, messages, tools=None, temperature=0.7, max_tokens=None, on_delta=None):  # noqa: ANN001, ANN201
            seen.append("chat-1" in runtime_ref[0].active)
            return await super().stream(messages, tools, temperature, max_tokens, on_delta)

    provider = PeekingProvider("a", LLMResponse(content="ok"))
    runtime, _, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))
    runtime_ref.append(runtime)

    await runtime.run(_request())

    assert seen == [True]
    assert "chat-1" not in runtime.active


class SlowStreamProvider(LLMProvider):
    """Emits deltas steadily for longer than the configured request timeout."""

    def __init__(self, model: str, pieces: int, pause: float) -> None:
        self.model = model
        self._pieces = pieces
        self._pause = pause

    async def stream(self, messages, tools=None, temperature=0.7, max_tokens=None, on_delta=None):  # noqa: ANN001, ANN201
        parts = []
        for i in range(self._pieces):
            await asyncio.sleep(self._pause)
            parts.append(f"p{i}")
            if on_delta is not None:
                on_delta(f"p{i}")
        return LLMResponse(content=" ".join(parts))


@pytest.mark.asyncio
async def test_long_stream_is_not_cut_by_request_timeout(tmp_path):
    settings = _settings()
    settings.request_timeout_seconds = 0.05
    runtime = AgentRuntime(
        settings=settings,
        tool_registry=ToolRegistry(),
        sessions=SessionStore(),
        db=_db(tmp_path),
        resolver=FakeResolver({MODELS[0]: SlowStreamProvider("a", pieces=6, pause=0.03)}),
    )
    observer = RecordingObserver()

    result = await runtime.respond(_request(), observer)

    assert result.error is False
    assert result.model == MODELS[0]
    assert result.text == "p0 p1 p2 p3 p4 p5"
    assert observer.chunks == ["p0", "p1", "p2", "p3", "p4", "p5"]


def _delegating_runtime(tmp_path, allowed: list[str]):  # noqa: ANN001, ANN202
    coder = ScriptedProvider("coder", LLMResponse(content="respuesta del coder"))
    writer = ScriptedProvider(
        "a",
        LLMResponse(
            content="",
            tool_calls=[ToolCall(id="c1", name="call_expert", arguments='{"expert_name": "coder", "task": "revisa"}')],
        ),
        LLMResponse(content="listo"),
    )
    resolver = FakeResolver({MODELS[0]: writer, "openrouter/coder": coder}, order=[MODELS[0]])
    registry = ToolRegistry()
    runtime, sessions, db = _runtime(tmp_path, resolver, registry)
    registry.register(CallExpertTool(ExpertRunner(db, resolver)))
    db.upsert_expert(ExpertProfile(name="coder", model="openrouter/coder", system_prompt="Programador."))
    db.upsert_expert(
        ExpertProfile(
            name="escritor", model=MODELS[0], system_prompt="Escritor.", tools=["call_expert"], experts=allowed
        )
    )
    return runtime, sessions, coder


@pytest.mark.asyncio
async def test_call_expert_respects_empty_expert_allow_list(tmp_path):
    runtime, sessions, coder = _delegating_runtime(tmp_path, allowed=[])

    result = await runtime.run(_request(expert_name="escritor"))

    tool_message = sessions.get_history("chat-1")[2]
    assert result.text == "listo"
    assert tool_message.tool_call_id == "c1"
    assert tool_message.content.startswith("Error al ejecutar call_expert")
    assert "no está permitido" in tool_message.content
    assert "respuesta del coder" not in tool_message.content
    assert coder.calls == []


@pytest.mark.asyncio
async def test_call_expert_reaches_allowed_peer(tmp_path):
    runtime, sessions, coder = _delegating_runtime(tmp_path, allowed=["coder"])

    await runtime.run(_request(expert_name="escritor"))

    assert sessions.get_history("chat-1")[2].content == "respuesta del coder"
    assert len(coder.calls) == 1


@pytest.mark.asyncio
async def test_forget_drops_conversation_history(tmp_path):
    provider = ScriptedProvider("a", LLMResponse(content="hola"))
    runtime, sessions, _ = _runtime(tmp_path, FakeResolver({MODELS[0]: provider}))
    await runtime.run(_request())
    assert sessions.size("chat-1") == 2

    runtime.forget("chat-1")

    assert sessions.size("chat-1") == 0
