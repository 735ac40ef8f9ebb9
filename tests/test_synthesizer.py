"""Tests for the VOICEVOX synthesizer."""

from __future__ import annotations

import asyncio
import json
from typing import Callable

import httpx
import pytest

from streamer.cancellation import CancellationToken, OperationCancelled
from streamer.config import ReplaceRule
from streamer.errors import SynthesisError
from streamer.speech.synthesizer import VoicevoxSynthesizer

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class RecordingEngine:
    """Minimal VOICEVOX engine double."""

    def __init__(
        self,
        *,
        query_status: int = 200,
        synthesis_status: int = 200,
        query_body: bytes | None = None,
    ) -> None:
        self.requests: list[httpx.Request] = []
        self.query_status = query_status
        self.synthesis_status = synthesis_status
        self.query_body = query_body

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/audio_query":
            if self.query_status >= 400:
                return httpx.Response(self.query_status, text="bad speaker")
            if self.query_body is not None:
                return httpx.Response(200, content=self.query_body)
            text = request.url.params["text"]
            return httpx.Response(200, json={"accent_phrases": [], "kana": text})
        if request.url.path == "/synthesis":
            if self.synthesis_status >= 400:
                return httpx.Response(self.synthesis_status, text="engine crashed")
            return httpx.Response(200, content=b"RIFF....WAVE")
        return httpx.Response(404)


def make_synthesizer(
    engine: Callable[[httpx.Request], httpx.Response],
    *,
    replace: list[ReplaceRule] | None = None,
) -> VoicevoxSynthesizer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(engine))
    return VoicevoxSynthesizer(
        "http://voicevox.test:50021/",
        speaker=3,
        replace=replace or [],
        http_client=client,
    )


async def test_two_stage_request_flow() -> None:
    engine = RecordingEngine()
    synthesizer = make_synthesizer(engine)

    audio = await synthesizer.synthesize("こんにちは。", CancellationToken())

    assert audio == b"RIFF....WAVE"
    assert [request.url.path for request in engine.requests] == [
        "/audio_query",
        "/synthesis",
    ]
    query_request, synthesis_request = engine.requests
    assert query_request.method == "POST"
    assert query_request.url.params["speaker"] == "3"
    assert query_request.url.params["text"] == "こんにちは。"
    assert synthesis_request.url.params["speaker"] == "3"
    assert json.loads(synthesis_request.content) == {
        "accent_phrases": [],
        "kana": "こんにちは。",
    }


async def test_replace_rules_apply_in_order_then_whitespace_collapses() -> None:
    engine = RecordingEngine()
    synthesizer = make_synthesizer(
        engine,
        replace=[
            ReplaceRule(from_="AI", to="エーアイ"),
            ReplaceRule(from_="エーアイ配信", to="えーあいはいしん"),
        ],
    )

    await synthesizer.synthesize("  AI配信 の\n時間   です ", CancellationToken())

    assert engine.requests[0].url.params["text"] == "えーあいはいしん の 時間 です"


def test_normalize_without_rules_only_collapses_whitespace() -> None:
    synthesizer = VoicevoxSynthesizer("http://voicevox.test")
    assert synthesizer.normalize("\tはい\n\nそうです  ") == "はい そうです"


async def test_cancelled_token_skips_all_requests() -> None:
    engine = RecordingEngine()
    synthesizer = make_synthesizer(engine)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        await synthesizer.synthesize("やあ。", token)

    assert engine.requests == []


async def test_cancellation_between_stages_skips_synthesis() -> None:
    token = CancellationToken()
    engine = RecordingEngine()

    def cancel_after_query(request: httpx.Request) -> httpx.Response:
        response = engine(request)
        if request.url.path == "/audio_query":
            token.cancel()
        return response

    synthesizer = make_synthesizer(cancel_after_query)

    with pytest.raises(OperationCancelled):
        await synthesizer.synthesize("やあ。", token)

    assert [request.url.path for request in engine.requests] == ["/audio_query"]


async def test_audio_query_rejection_names_the_stage() -> None:
    synthesizer = make_synthesizer(RecordingEngine(query_status=422))

    with pytest.raises(SynthesisError) as excinfo:
        await synthesizer.synthesize("テスト", CancellationToken())

    assert excinfo.value.stage == "audio_query"
    assert excinfo.value.status_code == 422
    assert excinfo.value.body == "bad speaker"
    assert "audio_query failed" in str(excinfo.value)


async def test_synthesis_rejection_names_the_stage() -> None:
    synthesizer = make_synthesizer(RecordingEngine(synthesis_status=500))

    with pytest.raises(SynthesisError) as excinfo:
        await synthesizer.synthesize("テスト", CancellationToken())

    assert excinfo.value.stage == "synthesis"
    assert excinfo.value.status_code == 500


async def test_invalid_query_json_is_a_synthesis_error() -> None:
    synthesizer = make_synthesizer(RecordingEngine(query_body=b"<html>"))

    with pytest.raises(SynthesisError) as excinfo:
        await synthesizer.synthesize("テスト", CancellationToken())

    assert excinfo.value.stage == "audio_query"


async def test_transport_failure_is_wrapped() -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    synthesizer = make_synthesizer(unreachable)

    with pytest.raises(SynthesisError) as excinfo:
        await synthesizer.synthesize("テスト", CancellationToken())

    assert excinfo.value.stage == "audio_query"
    assert excinfo.value.status_code is None
    assert "connection refused" in str(excinfo.value)


async def test_aclose_leaves_injected_client_open() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(RecordingEngine()))
    synthesizer = VoicevoxSynthesizer("http://voicevox.test", http_client=client)

    await synthesizer.aclose()

    assert not client.is_closed
    await client.aclose()


async def test_redirect_is_not_treated_as_audio() -> None:
    engine = RecordingEngine()

    def redirecting(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/synthesis":
            engine.requests.append(request)
            return httpx.Response(302, headers={"Location": "/login"}, text="moved")
        return engine(request)

    synthesizer = make_synthesizer(redirecting)

    with pytest.raises(SynthesisError) as excinfo:
        await synthesizer.synthesize("テスト", CancellationToken())

    assert excinfo.value.stage == "synthesis"
    assert excinfo.value.status_code == 302


async def test_cancel_abandons_a_stalled_request() -> None:
    token = CancellationToken()
    never = asyncio.Event()

    async def stalled(request: httpx.Request) -> httpx.Response:
        await never.wait()
        return httpx.Response(200, json={})

    synthesizer = make_synthesizer(stalled)
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(OperationCancelled):
        await asyncio.wait_for(synthesizer.synthesize("テスト", token), timeout=1)
