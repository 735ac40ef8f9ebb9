"""
Speech dispatcher.

Owns the single-worker FIFO of speech jobs, the cancellation token of the job
that is currently running, and the outbound command channel.

    dispatch(request)
        -> [interrupt: cancel running token, drop queued jobs, emit ClearQueue]
        -> queue -> worker (one job at a time)
            -> fragments (literal split, or GenerationSession.stream)
                -> CommandExtractor -> Synthesizer
                -> emit directives, UpdateCaption, PlayAudio as one batch

Because only one job runs at a time, two narrations can never interleave their
commands, and at most one generation touches the conversation history.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from contextlib import aclosing, suppress
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Iterable, Optional

from ..avatars import AvatarStore
from ..cancellation import CancellationToken, OperationCancelled
from ..commands import (
    ClearQueue,
    Command,
    Configure,
    PlayAudio,
    StampedCommand,
    UpdateCaption,
)
from ..config import Settings
from ..errors import DispatchError, GenerationError
from ..llm import ChatCompletionsClient, LanguageModel
from .channel import CommandChannel, CommandSubscription
from .directives import CommandExtractor
from .generation import GenerationSession
from .history import ConversationHistory
from .segmenter import split_segments
from .synthesizer import VoicevoxSynthesizer
from .tools import ToolContext, ToolDefinition, build_tool_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeechRequest:
    """One caller invocation; consumed by exactly one job."""

    text: str
    image_ref: Optional[str] = None
    interrupt: bool = False
    direct: bool = False


_SEGMENTS_DONE = object()


class SpeechJob:
    """Caller-side handle on one queued dispatch task.

    Iterate it to receive each spoken caption as it is emitted, or await
    `collect()` for the full list. A failed job re-raises its error from both.
    """

    def __init__(self, job_id: int, request: SpeechRequest) -> None:
        self.id = job_id
        self.request = request
        self.state = "queued"
        self.error: Optional[BaseException] = None
        self._segments: list[str] = []
        self._stream: asyncio.Queue = asyncio.Queue()
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def segments(self) -> list[str]:
        return list(self._segments)

    def _start(self) -> None:
        self.state = "running"

    def _push(self, segment: str) -> None:
        self._segments.append(segment)
        self._stream.put_nowait(segment)

    def _finish(self, state: str, error: Optional[BaseException] = None) -> None:
        if self._done.is_set():
            return
        self.state = state
        self.error = error
        self._stream.put_nowait(_SEGMENTS_DONE)
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()

    async def collect(self) -> list[str]:
        await self._done.wait()
        if self.error is not None:
            raise self.error
        return list(self._segments)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[str, None]:
        while True:
            item = await self._stream.get()
            if item is _SEGMENTS_DONE:
                break
            yield item
        if self.error is not None:
            raise self.error

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        preview = self.request.text[:20]
        return f"SpeechJob(id={self.id}, state={self.state!r}, text={preview!r})"


class Dispatcher:
    """Serialize speech jobs and emit their presentation commands in order."""

    def __init__(
        self,
        synthesizer: VoicevoxSynthesizer,
        session: Optional[GenerationSession] = None,
        *,
        channel: Optional[CommandChannel] = None,
        extractor: Optional[CommandExtractor] = None,
        avatars: Optional[AvatarStore] = None,
        queue_size: int = 64,
        terminals: Optional[str] = None,
        settings: Optional[Settings] = None,
        extra_tools: Optional[Iterable[ToolDefinition]] = None,
    ) -> None:
        self._synthesizer = synthesizer
        self._settings = settings
        # Only set when this dispatcher built the session's tools.
        self._extra_tools = tuple(extra_tools) if extra_tools is not None else None
        self._session = session
        self._channel = channel or CommandChannel()
        self._extractor = extractor or CommandExtractor()
        self._avatars = avatars
        self._terminals = terminals
        self._queue: asyncio.Queue[SpeechJob] = asyncio.Queue(maxsize=queue_size)
        self._job_ids = itertools.count(1)
        self._worker: Optional[asyncio.Task] = None
        self._current_token: Optional[CancellationToken] = None
        self._current_job: Optional[SpeechJob] = None
        self._last_activity = time.monotonic()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: Optional[LanguageModel] = None,
        synthesizer: Optional[VoicevoxSynthesizer] = None,
        avatars: Optional[AvatarStore] = None,
        extra_tools: Iterable[ToolDefinition] = (),
    ) -> "Dispatcher":
        extra_tools = tuple(extra_tools)
        channel = CommandChannel()
        avatars = avatars or AvatarStore(
            settings.avatar_dir, enabled=settings.avatar_enabled
        )
        tool_context = ToolContext(emit=channel.publish, settings=settings)
        session = GenerationSession(
            model or ChatCompletionsClient(settings),
            system_prompt=settings.prompt,
            history=ConversationHistory(settings.max_history),
            tools=build_tool_registry(settings, avatars, extra_tools),
            tool_context=tool_context,
            temperature=settings.temperature,
            max_tool_steps=settings.max_tool_steps,
            terminals=settings.segment_terminals,
        )
        return cls(
            synthesizer or VoicevoxSynthesizer.from_settings(settings),
            session,
            channel=channel,
            avatars=avatars,
            queue_size=settings.queue_size,
            terminals=settings.segment_terminals,
            settings=settings,
            extra_tools=extra_tools,
        )

    @property
    def channel(self) -> CommandChannel:
        return self._channel

    @property
    def synthesizer(self) -> VoicevoxSynthesizer:
        return self._synthesizer

    @property
    def session(self) -> Optional[GenerationSession]:
        return self._session

    @property
    def avatars(self) -> Optional[AvatarStore]:
        return self._avatars

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def is_idle(self) -> bool:
        return self._current_job is None and self._queue.empty()

    @property
    def idle_for(self) -> float:
        """Seconds since the last job was submitted or finished."""
        return time.monotonic() - self._last_activity

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def emit(self, command: Command) -> StampedCommand:
        return self._channel.publish(command)

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._work(), name="speech-dispatcher")
        logger.info("Speech dispatcher started")

    async def shutdown(self) -> None:
        self._cancel_current()
        self._drop_queued()
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        self._channel.close()
        logger.info("Speech dispatcher stopped")

    def configure(self, settings: Settings) -> None:
        """Apply new runtime settings and announce the public part to listeners."""

        self._settings = settings
        if self._avatars is not None:
            self._avatars = AvatarStore(
                settings.avatar_dir, enabled=settings.avatar_enabled
            )
        if self._session is not None:
            self._session.configure(settings)
            if self._extra_tools is not None and self._avatars is not None:
                self._session.tools = build_tool_registry(
                    settings, self._avatars, self._extra_tools
                )
        self._synthesizer.configure(settings)
        self._terminals = settings.segment_terminals
        self.emit(Configure(config=self.public_config(settings)))
        logger.info("Dispatcher reconfigured")

    def public_config(self, settings: Optional[Settings] = None) -> dict[str, Any]:
        """The non-secret part of the configuration that display clients read."""

        settings = settings or self._settings
        if settings is None:
            raise DispatchError("Dispatcher has no settings to publish")
        names = self._avatars.list_available() if self._avatars is not None else []
        idle = (
            {"timeout": settings.idle_timeout, "prompt": settings.idle_prompt}
            if settings.idle_timeout
            else None
        )
        return {
            "avatar": {"enabled": settings.avatar_enabled, "names": names},
            "idle": idle,
            "maxHistory": settings.max_history,
        }

    def subscribe(self) -> CommandSubscription:
        """Subscribe a display client, greeting it with the current configuration."""

        initial: list[Command] = []
        if self._settings is not None:
            initial.append(Configure(config=self.public_config()))
        return self._channel.subscribe(initial=initial)

    def dispatch(self, request: SpeechRequest) -> SpeechJob:
        """Enqueue a request and return its job handle without waiting."""

        if not self.running:
            raise DispatchError("Speech dispatcher is not running")
        if request.interrupt:
            self.interrupt()

        job = SpeechJob(next(self._job_ids), request)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull as exc:
            raise DispatchError("Speech queue is full") from exc
        self._last_activity = time.monotonic()
        logger.info(
            "Queued job %d (direct=%s, interrupt=%s, pending=%d)",
            job.id,
            request.direct,
            request.interrupt,
            self._queue.qsize(),
        )
        return job

    async def speak(self, request: SpeechRequest) -> list[str]:
        """Dispatch and wait for every caption the job speaks."""

        return await self.dispatch(request).collect()

    def interrupt(self) -> None:
        """Cancel the running job, drop everything queued, and emit ClearQueue."""

        cancelled = self._cancel_current()
        dropped = self._drop_queued()
        self.emit(ClearQueue())
        logger.info(
            "Interrupt: cancelled running job=%s, dropped %d queued job(s)",
            cancelled,
            dropped,
        )

    def _cancel_current(self) -> bool:
        token = self._current_token
        if token is None:
            return False
        token.cancel()
        self._current_token = None
        return True

    def _drop_queued(self) -> int:
        dropped = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self._queue.task_done()
            job._finish("dropped")
            dropped += 1

    async def _work(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: SpeechJob) -> None:
        if job.done:
            return

        token = CancellationToken(label=f"job-{job.id}")
        self._current_token = token
        self._current_job = job
        job._start()
        started = time.monotonic()
        try:
            async with aclosing(self._fragments(job.request, token)) as fragments:
                async for fragment in fragments:
                    if token.cancelled:
                        break
                    await self._speak_fragment(job, fragment, token)
        except OperationCancelled:
            job._finish("cancelled")
        except asyncio.CancelledError:
            job._finish("cancelled")
            raise
        except Exception as exc:
            logger.exception("Job %d failed", job.id)
            job._finish("failed", exc)
        else:
            job._finish("cancelled" if token.cancelled else "completed")
        finally:
            if self._current_token is token:
                self._current_token = None
            self._current_job = None
            self._last_activity = time.monotonic()
            logger.info(
                "Job %d %s in %.0fms (%d segment(s))",
                job.id,
                job.state,
                (time.monotonic() - started) * 1000,
                len(job.segments),
            )

    async def _fragments(
        self, request: SpeechRequest, token: CancellationToken
    ) -> AsyncGenerator[str, None]:
        if request.direct:
            for segment in split_segments(request.text, self._terminals):
                yield segment
            return

        if self._session is None:
            raise GenerationError(
                "No language model is configured for generated speech"
            )
        async with aclosing(
            self._session.stream(request.text, request.image_ref, token)
        ) as segments:
            async for segment in segments:
                yield segment

    async def _speak_fragment(
        self, job: SpeechJob, fragment: str, token: CancellationToken
    ) -> None:
        if not fragment.strip():
            return

        extracted = self._extractor.extract(fragment)
        caption = extracted.text
        commands: list[Command] = list(extracted.commands)

        if caption.strip():
            audio = await self._synthesizer.synthesize(caption, token)
            commands.append(UpdateCaption(text=caption))
            commands.append(PlayAudio(audio=audio))

        token.raise_if_cancelled()
        self._channel.publish_many(commands)
        if caption.strip():
            job._push(caption)
            logger.debug("Job %d spoke: %s", job.id, caption[:50])


__all__ = ["Dispatcher", "SpeechJob", "SpeechRequest"]
