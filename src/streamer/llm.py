"""OpenAI-compatible streaming chat completions client."""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncGenerator,
    Iterable,
    Optional,
    Protocol,
    Sequence,
    Union,
)

import httpx
from fastapi import status

from .cancellation import CancellationToken
from .config import Settings

logger = logging.getLogger(__name__)


class LLMProviderError(Exception):
    """Wrap transport or API failures when communicating with the model provider."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCall:
    call_id: str
    name: str
    arguments: Optional[dict[str, Any]]
    raw_arguments: str = ""


@dataclass
class StreamFailure:
    detail: Any


@dataclass
class StreamFinished:
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = field(default=None, repr=False)


ModelEvent = Union[TextDelta, ToolCall, StreamFailure, StreamFinished]


class LanguageModel(Protocol):
    """Streaming chat model: role-tagged messages in, typed events out."""

    def stream(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        tools: Sequence[dict[str, Any]] | None,
        tool_choice: str = "auto",
        temperature: float,
        token: CancellationToken,
    ) -> AsyncGenerator[ModelEvent, None]:
        ...


class ChatCompletionsClient:
    """Stream `/chat/completions` from OpenAI or any compatible server."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None

    def configure(self, settings: Settings) -> None:
        self._settings = settings

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
            self._http_client = httpx.AsyncClient(timeout=timeout, http2=True)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            try:
                await self._http_client.aclose()
            finally:
                self._http_client = None

    @property
    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.openai_api_key is not None:
            headers["Authorization"] = (
                f"Bearer {self._settings.openai_api_key.get_secret_value()}"
            )
        return headers

    def build_payload(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        tools: Sequence[dict[str, Any]] | None,
        tool_choice: str = "auto",
        temperature: float,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.openai_model,
            "messages": list(messages),
            "temperature": temperature,
            "stream": True,
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = tool_choice
        return payload

    async def stream(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        tools: Sequence[dict[str, Any]] | None,
        tool_choice: str = "auto",
        temperature: float,
        token: CancellationToken,
    ) -> AsyncGenerator[ModelEvent, None]:
        """Yield text deltas as they arrive, then tool calls, then `StreamFinished`."""

        payload = self.build_payload(
            messages, tools=tools, tool_choice=tool_choice, temperature=temperature
        )
        streamed_tool_calls: list[dict[str, Any]] = []
        finish_reason: str | None = None
        usage: dict[str, Any] | None = None

        async with aclosing(self.stream_chat_raw(payload)) as events:
            async for event in events:
                if token.cancelled:
                    logger.debug("Model stream abandoned after cancellation")
                    return

                data = event.data
                if not data:
                    continue
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON SSE payload: %s", data)
                    continue
                if not isinstance(chunk, dict):
                    continue

                if "error" in chunk:
                    yield StreamFailure(chunk["error"])
                    return

                choices = chunk.get("choices") or []
                if not isinstance(choices, list):
                    yield StreamFailure(f"Malformed chunk: choices={choices!r}")
                    return

                for choice in choices:
                    if not isinstance(choice, dict):
                        yield StreamFailure(f"Malformed chunk: choice={choice!r}")
                        return
                    delta = choice.get("delta") or {}
                    if not isinstance(delta, dict):
                        yield StreamFailure(f"Malformed chunk: delta={delta!r}")
                        return
                    content = delta.get("content")
                    if isinstance(content, str) and content:
                        yield TextDelta(content)
                    if tool_deltas := delta.get("tool_calls"):
                        merge_tool_calls(streamed_tool_calls, tool_deltas)
                    if choice_finish := choice.get("finish_reason"):
                        finish_reason = choice_finish

                usage_value = chunk.get("usage")
                if isinstance(usage_value, dict):
                    usage = usage_value

        for call in finalize_tool_calls(streamed_tool_calls):
            yield call
        yield StreamFinished(finish_reason=finish_reason, usage=usage)

    async def stream_chat_raw(
        self, payload: dict[str, Any]
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Low-level streaming helper accepting a prebuilt payload."""

        url = f"{self._settings.openai_endpoint}/chat/completions"

        client = self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    raise LLMProviderError(response.status_code, detail)

                async for event in self._iter_events(response):
                    yield event
        except httpx.HTTPError as exc:
            raise LLMProviderError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field_name, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field_name == "event":
                event_name = value or None
            elif field_name == "data":
                data_lines.append(value)
            elif field_name == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Model provider returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


def merge_tool_calls(
    accumulator: list[dict[str, Any]],
    deltas: Any,
) -> None:
    """Fold streamed tool-call fragments into complete call records."""

    for delta in deltas or []:
        if not isinstance(delta, dict):
            continue

        index = delta.get("index")
        delta_id = delta.get("id")
        if not isinstance(index, int) or index < 0:
            index = None
            if isinstance(delta_id, str):
                for existing_index, existing in enumerate(accumulator):
                    if existing.get("id") == delta_id:
                        index = existing_index
                        break
            if index is None:
                index = len(accumulator)

        while len(accumulator) <= index:
            accumulator.append(
                {
                    "id": None,
                    "type": "function",
                    "function": {"name": None, "arguments": ""},
                }
            )

        entry = accumulator[index]
        if delta_id:
            entry["id"] = delta_id

        function_delta = delta.get("function") or {}
        if function_name := function_delta.get("name"):
            entry["function"]["name"] = function_name
        if arguments_fragment := function_delta.get("arguments"):
            entry["function"]["arguments"] += arguments_fragment


def finalize_tool_calls(tool_calls: list[dict[str, Any]]) -> list[ToolCall]:
    """Turn merged records into `ToolCall` events, skipping nameless calls."""

    finalized: list[ToolCall] = []
    for index, call in enumerate(tool_calls):
        function = call.get("function") or {}
        name = function.get("name")
        if not (isinstance(name, str) and name.strip()):
            continue

        raw_arguments = function.get("arguments") or ""
        arguments: dict[str, Any] | None
        if not raw_arguments.strip():
            arguments = {}
        else:
            try:
                parsed = json.loads(raw_arguments)
            except json.JSONDecodeError:
                logger.warning("Tool argument parse failure for %s", name)
                parsed = None
            arguments = parsed if isinstance(parsed, dict) else None

        finalized.append(
            ToolCall(
                call_id=call.get("id") or f"call_{index}",
                name=name.strip(),
                arguments=arguments,
                raw_arguments=raw_arguments,
            )
        )
    return finalized


__all__ = [
    "ChatCompletionsClient",
    "LLMProviderError",
    "LanguageModel",
    "ModelEvent",
    "ServerSentEvent",
    "StreamFailure",
    "StreamFinished",
    "TextDelta",
    "ToolCall",
    "finalize_tool_calls",
    "merge_tool_calls",
]
