import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's shell or `.env` from leaking into Settings."""

    for name in (
        "OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "OPENAI_API_BASE_URL",
        "OPENAI_MODEL",
        "VOICEVOX_API_ORIGIN",
        "VOICEVOX_ORIGIN",
        "VOICEVOX_SPEAKER",
        "STREAMER_MAX_HISTORY",
        "STREAMER_MAX_TOOL_STEPS",
        "STREAMER_AVATAR_DIR",
        "STREAMER_AVATAR_ENABLED",
        "STREAMER_IDLE_TIMEOUT",
        "STREAMER_TOOL_MODULES",
        "STREAMER_REPLACE",
        "STREAMER_PROMPT",
    ):
        monkeypatch.delenv(name, raising=False)
