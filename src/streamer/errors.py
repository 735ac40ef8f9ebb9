"""Error taxonomy for the speech pipeline."""

from __future__ import annotations

from typing import Any


class GenerationError(Exception):
    """The language model stream failed or produced a malformed event."""

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail


class SynthesisError(Exception):
    """The speech synthesis service rejected a request or was unreachable."""

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ):
        self.stage = stage
        self.status_code = status_code
        self.body = body
        parts = [f"{stage} failed: {message}"]
        if status_code is not None:
            parts.append(f"status={status_code}")
        if body:
            parts.append(f"body={body}")
        super().__init__(" ".join(parts))


class UnknownDirective(Exception):
    """An inline directive marker that is not in the recognised set."""

    def __init__(self, name: str, marker: str):
        super().__init__(f"Unknown directive {name!r} in {marker!r}")
        self.name = name
        self.marker = marker


class AssetNotFound(Exception):
    """No avatar image exists for the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Avatar image {name!r} not found")
        self.name = name


class DispatchError(Exception):
    """The dispatcher could not accept a request."""


__all__ = [
    "AssetNotFound",
    "DispatchError",
    "GenerationError",
    "SynthesisError",
    "UnknownDirective",
]
