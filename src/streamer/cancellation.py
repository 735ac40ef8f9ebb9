"""Cooperative cancellation for dispatch tasks."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Awaitable, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised at a suspension point once the owning token has been cancelled."""


class CancellationToken:
    """One-shot cancellation flag owned by a single dispatch task.

    The token starts active and moves to cancelled exactly once. It is never
    reset; a new task always gets a new token.
    """

    def __init__(self, label: str | None = None) -> None:
        self.label = label
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.label or "operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, abandoning it as soon as the token is cancelled.

        Raises:
            OperationCancelled: the token was cancelled first; the pending
                operation has been cancelled too.
        """
        self.raise_if_cancelled()
        operation = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait(
                {operation, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            operation.cancel()
            raise
        finally:
            waiter.cancel()

        if operation.done():
            return operation.result()
        operation.cancel()
        with suppress(asyncio.CancelledError):
            await operation
        raise OperationCancelled(self.label or "operation cancelled")

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationToken(label={self.label!r}, state={state})"


__all__ = ["CancellationToken", "OperationCancelled"]
