"""Tests for the OpenAI-compatible streaming client."""

from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any

import httpx
import pytest
from pydantic import AnyHttpUrl, SecretStr

from streamer.cancellation import CancellationToken
from streamer.config import Settings
from streamer.errors import GenerationError
from streamer.llm import (
    ChatCompletionsClient,
    LLMProviderError,
    StreamFailure,
    StreamFinished,
    TextDelta,
    ToolCall,
    finalize_tool_calls,
    merge_tool_calls,
)
from streamer.speech.generation import GenerationSession
from streamer.speech.history import ConversationHistory

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def sse_body(*chunks: Any, done: bool = True) -> bytes:
    lines = []
    for chunk in chunks:
        data = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def make_client(
    handler,
    *,
    api_key: str | None = "test",
) -> ChatCompletionsClient:
    settings = Settings(
        openai_api_key=SecretStr(api_key) if api_key else None,
        openai_base_url=AnyHttpUrl("https://llm.example.com/v1"),
        openai_model="test-model",
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatCompletionsClient(settings, http_client=http_client)


async def collect(client: ChatCompletionsClient, **kwargs: Any) -> list[Any]:
    token = kwargs.pop("token", None) or CancellationToken()
    events = []
    async for event in client.stream(
        [{"role": "user", "content": "hi"}],
        tools=kwargs.pop("tools", None),
        tool_choice=kwargs.pop("tool_choice", "auto"),
        temperature=1.0,
        token=token,
    ):
        events.append(event)
    return events


class TestBuildPayload:
    def test_omits_tools_when_none_are_offered(self):
        client = make_client(lambda request: httpx.Response(200))
        payload = client.build_payload(
            [{"role": "user", "content": "hi"}], tools=None, temperature=0.7
        )
        assert payload == {
            "model": "test-model",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.7,
            "stream": True,
        }

    def test_forwards_tool_choice(self):
        client = make_client(lambda request: httpx.Response(200))
        tool = {"type": "function", "function": {"name": "setAvatar"}}
        payload = client.build_payload(
            [], tools=[tool], tool_choice="none", temperature=1.0
        )
        assert payload["tools"] == [tool]
        assert payload["tool_choice"] == "none"


async def test_stream_yields_text_then_finish() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        body = sse_body(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "こんにちは"}}]},
            "not json at all",
            {"choices": [{"delta": {"content": "。"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"total_tokens": 12}},
        )
        return httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"}
        )

    events = await collect(make_client(handler))

    assert captured["url"] == "https://llm.example.com/v1/chat/completions"
    assert captured["headers"]["authorization"] == "Bearer test"
    assert captured["body"]["stream"] is True
    assert events == [
        TextDelta("こんにちは"),
        TextDelta("。"),
        StreamFinished(finish_reason="stop", usage={"total_tokens": 12}),
    ]


async def test_missing_api_key_sends_no_authorization_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=sse_body())

    await collect(make_client(handler, api_key=None))

    assert "authorization" not in seen[0].headers


async def test_streamed_tool_calls_are_merged_and_finalized() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = sse_body(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": 0,
                                    "id": "call_a",
                                    "function": {"name": "setAvatar", "arguments": ""},
                                }
                            ]
                        }
                    }
                ]
            },
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "function": {"arguments": '{"name": '}}
                            ]
                        }
                    }
                ]
            },
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "function": {"arguments": '"喜び"}'}}
                            ]
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            },
        )
        return httpx.Response(200, content=body)

    events = await collect(make_client(handler), tools=[{"type": "function"}])

    assert events == [
        ToolCall(
            call_id="call_a",
            name="setAvatar",
            arguments={"name": "喜び"},
            raw_arguments='{"name": "喜び"}',
        ),
        StreamFinished(finish_reason="tool_calls"),
    ]


async def test_error_chunk_becomes_stream_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = sse_body(
            {"choices": [{"delta": {"content": "途中"}}]},
            {"error": {"message": "overloaded"}},
            {"choices": [{"delta": {"content": "never"}}]},
        )
        return httpx.Response(200, content=body)

    events = await collect(make_client(handler))

    assert events == [
        TextDelta("途中"),
        StreamFailure({"message": "overloaded"}),
    ]


async def test_http_error_status_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    with pytest.raises(LLMProviderError) as excinfo:
        await collect(make_client(handler))

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == {"message": "bad key"}


async def test_transport_error_maps_to_bad_gateway() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(LLMProviderError) as excinfo:
        await collect(make_client(handler))

    assert excinfo.value.status_code == 502


async def test_cancelled_token_stops_the_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, content=sse_body({"choices": [{"delta": {"content": "x"}}]})
        )

    token = CancellationToken()
    token.cancel()

    assert await collect(make_client(handler), token=token) == []


def test_parse_event_supports_multiple_data_lines() -> None:
    client = make_client(lambda request: httpx.Response(200))

    event = client._parse_event(  # type: ignore[attr-defined]
        ["event: completion", "id: test-id", "data: part one", "data: part two"]
    )

    assert event.event == "completion"
    assert event.event_id == "test-id"
    assert event.data == "part one\npart two"


class TestFinalizeToolCalls:
    """Merged call records become typed events."""

    def test_skips_calls_without_a_name(self):
        raw = [{"id": "call_1", "function": {"name": "", "arguments": "{}"}}]
        assert finalize_tool_calls(raw) == []

    def test_empty_arguments_become_empty_dict(self):
        raw = [{"id": "call_1", "function": {"name": "ping", "arguments": ""}}]
        assert finalize_tool_calls(raw)[0].arguments == {}

    def test_invalid_json_keeps_raw_arguments(self):
        raw = [{"id": "call_1", "function": {"name": "ping", "arguments": "{oops"}}]
        (call,) = finalize_tool_calls(raw)
        assert call.arguments is None
        assert call.raw_arguments == "{oops"

    def test_assigns_default_id(self):
        raw = [{"function": {"name": "ping", "arguments": "{}"}}]
        assert finalize_tool_calls(raw)[0].call_id == "call_0"


class TestMergeToolCalls:
    def test_deltas_without_index_match_by_id(self):
        accumulator: list[dict[str, Any]] = []
        merge_tool_calls(
            accumulator,
            [{"id": "a", "function": {"name": "one", "arguments": "{"}}],
        )
        merge_tool_calls(accumulator, [{"id": "a", "function": {"arguments": "}"}}])
        merge_tool_calls(accumulator, [{"id": "b", "function": {"name": "two"}}])

        assert [entry["function"]["name"] for entry in accumulator] == ["one", "two"]
        assert accumulator[0]["function"]["arguments"] == "{}"

    def test_ignores_non_dict_deltas(self):
        accumulator: list[dict[str, Any]] = []
        merge_tool_calls(accumulator, ["junk", None])
        assert accumulator == []


@pytest.mark.parametrize(
    "chunk",
    [
        {"choices": [None]},
        {"choices": ["text"]},
        {"choices": {"delta": {"content": "x"}}},
        {"choices": [{"delta": "x"}]},
    ],
)
async def test_malformed_chunk_becomes_stream_failure(chunk: dict[str, Any]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_body(chunk))

    events = await collect(make_client(handler))

    assert len(events) == 1
    assert isinstance(events[0], StreamFailure)
    assert "Malformed chunk" in events[0].detail


async def test_malformed_chunk_fails_generation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_body({"choices": [None]}))

    session = GenerationSession(
        make_client(handler),
        system_prompt="prompt",
        history=ConversationHistory(10),
    )

    with pytest.raises(GenerationError, match="Malformed chunk"):
        async with aclosing(
            session.stream("状況", None, CancellationToken())
        ) as segments:
            async for _ in segments:
                pass
