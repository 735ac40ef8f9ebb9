"""Inline stage-direction markers embedded in narration text."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from ..commands import Command, SetAvatar
from ..errors import UnknownDirective

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"\s*<[^>]+>\s*")
_DIRECTIVE_RE = re.compile(r"<([^>\s]+)(?:\s+([^>]+))?>")

DEFAULT_AVATAR = "default"


@dataclass
class ExtractedFragment:
    text: str
    commands: list[Command] = field(default_factory=list)


class CommandExtractor:
    """Strip `<name arg>` markers from a fragment and turn them into commands."""

    def extract(self, fragment: str) -> ExtractedFragment:
        commands: list[Command] = []

        def _replace(match: re.Match[str]) -> str:
            command = self.parse(match.group(0))
            if command is not None:
                commands.append(command)
            return ""

        text = _MARKER_RE.sub(_replace, fragment)
        return ExtractedFragment(text=text, commands=commands)

    def parse(self, marker: str) -> Command | None:
        match = _DIRECTIVE_RE.search(marker.strip())
        if not match:
            return None

        name, argument = match.group(1), match.group(2)
        if name == "setAvatar":
            return SetAvatar(name=(argument or DEFAULT_AVATAR).strip())

        error = UnknownDirective(name, marker.strip())
        logger.warning("%s; dropping it", error)
        return None


__all__ = ["CommandExtractor", "DEFAULT_AVATAR", "ExtractedFragment"]
