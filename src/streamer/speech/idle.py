"""Keep the narrator talking when nobody has asked it anything for a while."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Optional

from ..errors import DispatchError
from .dispatcher import Dispatcher, SpeechRequest

logger = logging.getLogger(__name__)


class IdleNarrator:
    """Dispatch ``prompt`` whenever the dispatcher has idled for ``timeout`` seconds."""

    def __init__(self, dispatcher: Dispatcher, *, timeout: float, prompt: str) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._dispatcher = dispatcher
        self.timeout = timeout
        self.prompt = prompt
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="idle-narrator")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            if not self._dispatcher.is_idle:
                await asyncio.sleep(min(self.timeout, 1.0))
                continue
            remaining = self.timeout - self._dispatcher.idle_for
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue
            try:
                job = self._dispatcher.dispatch(SpeechRequest(text=self.prompt))
            except DispatchError as exc:
                logger.warning("Idle narration skipped: %s", exc)
                await asyncio.sleep(self.timeout)
                continue
            logger.info(
                "Dispatcher idle for %.1fs; queued idle job %d", self.timeout, job.id
            )
            await job.wait()


__all__ = ["IdleNarrator"]
