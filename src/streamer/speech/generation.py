"""Generated narration: model streaming, history, and the bounded tool loop."""

from __future__ import annotations

import dataclasses
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Optional

from ..cancellation import CancellationToken
from ..commands import Command
from ..config import Settings
from ..errors import GenerationError
from ..llm import (
    LanguageModel,
    LLMProviderError,
    StreamFailure,
    StreamFinished,
    TextDelta,
    ToolCall,
)
from .history import ConversationHistory
from .segmenter import TextSegmenter
from .tools import ToolCallStep, ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_STEPS = 5


class GenerationSession:
    """Turn a prompt into a lazy stream of sentence segments.

    Only one stream may be active at a time; the dispatcher's single worker
    guarantees that, so history needs no lock.
    """

    def __init__(
        self,
        model: LanguageModel,
        *,
        system_prompt: str,
        history: ConversationHistory,
        tools: Optional[ToolRegistry] = None,
        tool_context: Optional[ToolContext] = None,
        temperature: float = 1.0,
        max_tool_steps: int = DEFAULT_MAX_TOOL_STEPS,
        terminals: Optional[str] = None,
    ) -> None:
        if max_tool_steps < 1:
            raise ValueError("max_tool_steps must be >= 1")
        self._model = model
        self.system_prompt = system_prompt
        self.history = history
        self.tools = tools or ToolRegistry()
        self._tool_context = tool_context
        self.temperature = temperature
        self.max_tool_steps = max_tool_steps
        self.terminals = terminals
        self.steps: list[ToolCallStep] = []

    @property
    def model(self) -> LanguageModel:
        return self._model

    def configure(self, settings: Settings) -> None:
        self.system_prompt = settings.prompt
        self.temperature = settings.temperature
        self.max_tool_steps = settings.max_tool_steps
        self.terminals = settings.segment_terminals
        self.history.resize(settings.max_history)
        if self._tool_context is not None:
            self._tool_context.settings = settings
        configure_model = getattr(self._model, "configure", None)
        if callable(configure_model):
            configure_model(settings)

    def compose_messages(
        self, prompt: str, image_ref: Optional[str] = None
    ) -> list[dict[str, Any]]:
        user_content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        if image_ref:
            user_content.append({"type": "image_url", "image_url": {"url": image_ref}})
        return [
            {"role": "system", "content": self.system_prompt},
            *self.history.as_messages(),
            {"role": "user", "content": user_content},
        ]

    async def stream(
        self,
        prompt: str,
        image_ref: Optional[str],
        token: CancellationToken,
    ) -> AsyncGenerator[str, None]:
        """Yield segments as soon as the model completes them.

        The full response, or whatever part of it arrived before cancellation or
        failure, is appended to history when the generator finishes or is closed.
        """
        messages = self.compose_messages(prompt, image_ref)
        segmenter = TextSegmenter(self.terminals)
        response_parts: list[str] = []
        self.steps = []
        tools_payload = self.tools.to_openai_tools() if len(self.tools) else None
        tool_steps = 0

        try:
            while True:
                forced_final = tool_steps >= self.max_tool_steps
                turn_text: list[str] = []
                turn_calls: list[ToolCall] = []

                events = self._model.stream(
                    messages,
                    tools=tools_payload,
                    tool_choice="none" if forced_final else "auto",
                    temperature=self.temperature,
                    token=token,
                )
                try:
                    async with aclosing(events):
                        async for event in events:
                            if token.cancelled:
                                return
                            if isinstance(event, TextDelta):
                                turn_text.append(event.text)
                                response_parts.append(event.text)
                                for segment in segmenter.consume(event.text):
                                    yield segment
                                    if token.cancelled:
                                        return
                            elif isinstance(event, ToolCall):
                                turn_calls.append(event)
                            elif isinstance(event, StreamFailure):
                                raise GenerationError(
                                    f"Model stream failed: {event.detail}",
                                    event.detail,
                                )
                            elif isinstance(event, StreamFinished):
                                logger.debug(
                                    "Model turn finished: %s", event.finish_reason
                                )
                            else:
                                raise GenerationError(
                                    f"Unexpected model event {type(event).__name__}"
                                )
                except LLMProviderError as exc:
                    raise GenerationError(
                        f"Model provider error ({exc.status_code}): {exc.detail}",
                        exc.detail,
                    ) from exc

                if token.cancelled:
                    return
                if not turn_calls or tools_payload is None:
                    break
                if forced_final:
                    logger.warning(
                        "Ignoring %d tool call(s) after reaching the %d step limit",
                        len(turn_calls),
                        self.max_tool_steps,
                    )
                    break

                tool_steps += 1
                await self._run_tool_step(
                    tool_steps, turn_calls, "".join(turn_text), messages, token
                )
                if token.cancelled:
                    return

            yield segmenter.flush()
        finally:
            response = "".join(response_parts)
            if response:
                self.history.append(response)

    async def _run_tool_step(
        self,
        step: int,
        calls: list[ToolCall],
        turn_text: str,
        messages: list[dict[str, Any]],
        token: CancellationToken,
    ) -> None:
        messages.append(
            {
                "role": "assistant",
                "content": turn_text or None,
                "tool_calls": [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": call.raw_arguments or "{}",
                        },
                    }
                    for call in calls
                ],
            }
        )
        context = self._guarded_context(token)
        for call in calls:
            token.raise_if_cancelled()
            if context is None:
                result, failed = f"Tool {call.name} cannot run without a context.", True
            else:
                result, failed = await self.tools.execute(call, context)
            logger.info(
                "Tool step %d: %s -> %s%s",
                step,
                call.name,
                result[:80],
                " (failed)" if failed else "",
            )
            self.steps.append(
                ToolCallStep(step=step, call=call, result=result, failed=failed)
            )
            messages.append(
                {"role": "tool", "tool_call_id": call.call_id, "content": result}
            )

    def _guarded_context(self, token: CancellationToken) -> Optional[ToolContext]:
        """Share the tool store, but drop anything a tool emits after cancellation."""
        if self._tool_context is None:
            return None
        emit = self._tool_context.emit

        def _emit(command: Command) -> None:
            if token.cancelled:
                logger.debug("Dropping %s emitted after cancellation", command.type)
                return
            emit(command)

        return dataclasses.replace(self._tool_context, emit=_emit)


__all__ = ["DEFAULT_MAX_TOOL_STEPS", "GenerationSession"]
