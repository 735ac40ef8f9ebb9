"""Avatar image lookup backed by a directory of image files."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path

from .errors import AssetNotFound

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp")
DEFAULT_AVATAR_NAME = "default"


class AvatarStore:
    """Resolve avatar names to image files inside a single directory."""

    def __init__(self, directory: Path | str, *, enabled: bool = True) -> None:
        self.directory = Path(directory)
        self.enabled = enabled

    def list_available(self) -> list[str]:
        """Return avatar names, `default` first.

        A missing directory yields `["default"]`; one without images yields `[]`.
        """

        if not self.directory.is_dir():
            return [DEFAULT_AVATAR_NAME]

        names = sorted(
            {
                path.stem
                for path in self.directory.iterdir()
                if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS
            }
        )
        if DEFAULT_AVATAR_NAME in names:
            names.remove(DEFAULT_AVATAR_NAME)
            names.insert(0, DEFAULT_AVATAR_NAME)
        return names

    def resolve(self, name: str) -> Path:
        base = self.directory.resolve()
        candidates = [name] + [f"{name}{ext}" for ext in IMAGE_EXTENSIONS]
        for candidate in candidates:
            path = (base / candidate).resolve()
            if not path.is_relative_to(base) or path == base:
                raise AssetNotFound(name)
            if path.is_file():
                return path
        raise AssetNotFound(name)

    def require_image(self, name: str) -> bytes:
        return self.resolve(name).read_bytes()

    def get_image(self, name: str) -> bytes | None:
        try:
            return self.require_image(name)
        except AssetNotFound as exc:
            logger.warning("%s in %s", exc, self.directory)
            return None

    @staticmethod
    def media_type(name: str) -> str:
        guessed, _ = mimetypes.guess_type(name)
        return guessed or "image/png"


__all__ = ["AvatarStore", "DEFAULT_AVATAR_NAME", "IMAGE_EXTENSIONS"]
