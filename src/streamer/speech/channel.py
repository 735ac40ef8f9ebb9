"""Outbound command channel between the dispatcher and display transports."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from ..commands import Command, StampedCommand

logger = logging.getLogger(__name__)

_CLOSED = object()


class CommandSubscription:
    """One listener's ordered view of the command stream."""

    def __init__(self, channel: "CommandChannel", max_pending: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: StampedCommand) -> bool:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # The consumer sees the closed flag once it has drained the backlog.
            pass

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def drain(self) -> list[StampedCommand]:
        """Return everything currently pending without waiting."""
        items: list[StampedCommand] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return items
            if item is not _CLOSED:
                items.append(item)

    def __aiter__(self) -> "CommandSubscription":
        return self

    async def __anext__(self) -> StampedCommand:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "CommandSubscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class CommandChannel:
    """Fan commands out to subscribers, stamped with a global sequence number.

    Publishing never awaits, so a batch passed to `publish_many` reaches every
    subscriber as one uninterrupted run.
    """

    def __init__(self, max_pending: int = 1024) -> None:
        self._max_pending = max_pending
        self._subscribers: list[CommandSubscription] = []
        self._sequence = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, *, initial: Iterable[Command] = ()) -> CommandSubscription:
        """Register a listener; `initial` commands are stamped and sent to it alone."""
        subscription = CommandSubscription(self, self._max_pending)
        for command in initial:
            subscription._offer(self._stamp(command))
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: CommandSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        subscription._close()

    def _stamp(self, command: Command) -> StampedCommand:
        self._sequence += 1
        stamped = StampedCommand(sequence=self._sequence, command=command)
        logger.debug("emit #%d %s", stamped.sequence, command.type)
        return stamped

    def publish(self, command: Command) -> StampedCommand:
        stamped = self._stamp(command)
        for subscription in list(self._subscribers):
            if not subscription._offer(stamped):
                logger.warning(
                    "Dropping command subscriber after %d undelivered commands",
                    self._max_pending,
                )
                self.unsubscribe(subscription)
        return stamped

    def publish_many(self, commands: Iterable[Command]) -> list[StampedCommand]:
        return [self.publish(command) for command in commands]

    def close(self) -> None:
        for subscription in list(self._subscribers):
            self.unsubscribe(subscription)


__all__ = ["CommandChannel", "CommandSubscription"]
