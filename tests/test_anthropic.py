from __future__ import annotations

import json

import httpx
import pytest

from argenteia.errors import PaymentRequired, RateLimited, ServiceUnavailable
from argenteia.llm.anthropic import ANTHROPIC_VERSION, AnthropicProvider, to_anthropic_messages


def _events(*events: dict) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


def _provider(handler) -> AnthropicProvider:  # noqa: ANN001
    return AnthropicProvider(
        model="claude-test",
        api_key="sk-ant",
        base_url="https://anthropic.test",
        transport=httpx.MockTransport(handler),
    )


def test_to_anthropic_messages_extracts_system_and_converts_tools():
    system, converted = to_anthropic_messages(
        [
            {"role": "system", "content": "Sé breve."},
            {"role": "user", "content": "clima y hora"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"id": "t1", "type": "function", "function": {"name": "get_weather", "arguments": '{"location": "Lima"}'}},
                    {"id": "t2", "type": "function", "function": {"name": "get_current_time", "arguments": "{bad"}},
                ],
            },
            {"role": "tool", "tool_call_id": "t1", "content": "Lima: nublado"},
            {"role": "tool", "tool_call_id": "t2", "content": "10:00"},
        ]
    )

    assert system == "Sé breve."
    assert converted[0] == {"role": "user", "content": "clima y hora"}
    assert converted[1]["role"] == "assistant"
    assert converted[1]["content"][0] == {
        "type": "tool_use",
        "id": "t1",
        "name": "get_weather",
        "input": {"location": "Lima"},
    }
    assert converted[1]["content"][1]["input"] == {}
    assert converted[2]["role"] == "user"
    assert [b["tool_use_id"] for b in converted[2]["content"]] == ["t1", "t2"]


@pytest.mark.asyncio
async def test_stream_parses_text_and_tool_use_events():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        body = _events(
            {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Consulto "}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "el clima."}},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"location":'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ' "Lima"}'}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 8}},
            {"type": "message_stop"},
        )
        return httpx.Response(200, content=body)

    chunks: list[str] = []
    tools = [{"type": "function", "function": {"name": "get_weather", "description": "d", "parameters": {"type": "object"}}}]
    response = await _provider(handler).stream(
        [{"role": "system", "content": "Sistema"}, {"role": "user", "content": "¿clima en Lima?"}],
        tools=tools,
        on_delta=chunks.append,
    )

    assert response.content == "Consulto el clima."
    assert chunks == ["Consulto ", "el clima."]
    assert [(c.id, c.name, c.arguments) for c in response.tool_calls] == [
        ("toolu_1", "get_weather", '{"location": "Lima"}')
    ]
    assert response.finish_reason == "tool_use"
    assert response.usage.total_tokens == 20
    assert captured["headers"]["anthropic-version"] == ANTHROPIC_VERSION
    assert captured["body"]["system"] == "Sistema"
    assert captured["body"]["tools"][0]["input_schema"] == {"type": "object"}


@pytest.mark.asyncio
async def test_payment_required_is_classified():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"error": {"message": "credit balance too low"}})

    with pytest.raises(PaymentRequired):
        await _provider(handler).stream([{"role": "user", "content": "hola"}])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error_type", "expected"),
    [("rate_limit_error", RateLimited), ("overloaded_error", ServiceUnavailable), ("api_error", ServiceUnavailable)],
)
async def test_stream_error_event_is_classified_by_type(error_type, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        body = _events(
            {"type": "message_start", "message": {"usage": {"input_tokens": 3}}},
            {"type": "error", "error": {"type": error_type, "message": "intenta más tarde"}},
        )
        return httpx.Response(200, content=body)

    with pytest.raises(expected) as excinfo:
        await _provider(handler).stream([{"role": "user", "content": "hola"}])

    assert "intenta más tarde" in str(excinfo.value)
