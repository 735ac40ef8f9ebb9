"""Bounded record of past assistant utterances."""

from __future__ import annotations

from collections import deque
from typing import Iterator


class ConversationHistory:
    """Keeps at most ``max_entries`` utterances, oldest dropped first."""

    def __init__(self, max_entries: int) -> None:
        if max_entries < 0:
            raise ValueError("max_entries must be >= 0")
        self._entries: deque[str] = deque(maxlen=max_entries)

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def append(self, utterance: str) -> None:
        self._entries.append(utterance)

    def resize(self, max_entries: int) -> None:
        if max_entries < 0:
            raise ValueError("max_entries must be >= 0")
        self._entries = deque(self._entries, maxlen=max_entries)

    def as_messages(self) -> list[dict[str, str]]:
        return [{"role": "assistant", "content": entry} for entry in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["ConversationHistory"]
