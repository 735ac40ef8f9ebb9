"""Presentation commands delivered to the display surface."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Union

UPDATE_CAPTION = "updateCaption"
SET_AVATAR = "setAvatar"
PLAY_AUDIO = "playAudio"
CLEAR_QUEUE = "clearQueue"
CONFIGURE = "configure"


@dataclass(frozen=True)
class UpdateCaption:
    text: str

    type = UPDATE_CAPTION

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "caption": self.text}


@dataclass(frozen=True)
class SetAvatar:
    name: str

    type = SET_AVATAR

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "avatar": self.name}


@dataclass(frozen=True)
class PlayAudio:
    audio: bytes = field(repr=False)

    type = PLAY_AUDIO

    def to_payload(self) -> dict[str, Any]:
        encoded = base64.b64encode(self.audio).decode("ascii")
        return {"type": self.type, "audioDataBase64": encoded}


@dataclass(frozen=True)
class ClearQueue:
    type = CLEAR_QUEUE

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class Configure:
    config: dict[str, Any]

    type = CONFIGURE

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "config": self.config}


Command = Union[UpdateCaption, SetAvatar, PlayAudio, ClearQueue, Configure]


@dataclass(frozen=True)
class StampedCommand:
    """A command tagged with its position in the global emission order."""

    sequence: int
    command: Command

    def to_sse(self) -> dict[str, str]:
        return {
            "event": self.command.type,
            "id": str(self.sequence),
            "data": json.dumps(self.command.to_payload(), ensure_ascii=False),
        }


__all__ = [
    "CLEAR_QUEUE",
    "CONFIGURE",
    "PLAY_AUDIO",
    "SET_AVATAR",
    "UPDATE_CAPTION",
    "ClearQueue",
    "Command",
    "Configure",
    "PlayAudio",
    "SetAvatar",
    "StampedCommand",
    "UpdateCaption",
]
