"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_PROMPT = """
あなたはゲーム実況ストリーマーです。
あなたは情緒豊かで、いつも視聴者に楽しい時間を提供します。
これからゲームのプレイ状況を伝えるので、それに合わせたセリフを生成してください。

また、発言の内容に合わせて、文の前後に以下の形式のコマンドを挿入して表情を指定してください。
<setAvatar default>

avatarとして指定できるのは以下です。
- default
- 喜び
- 当惑
- 涙目
- 焦り
- ドヤ顔
""".strip()


class ReplaceRule(BaseModel):
    """Literal substitution applied before synthesis to fix pronunciation."""

    from_: str = Field(alias="from", min_length=1)
    to: str

    model_config = ConfigDict(populate_by_name=True)


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Language model provider (any OpenAI-compatible chat completions API)
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices(
            "OPENAI_BASE_URL", "OPENAI_API_BASE_URL", "openai_base_url"
        ),
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("OPENAI_MODEL", "openai_model"),
    )
    temperature: float = Field(
        default=1.0,
        ge=0,
        le=2,
        validation_alias=AliasChoices("STREAMER_TEMPERATURE", "temperature"),
    )
    request_timeout: float = Field(
        default=120.0,
        ge=1,
        validation_alias=AliasChoices("OPENAI_TIMEOUT", "request_timeout"),
    )

    # VOICEVOX engine
    voicevox_origin: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:50021"),
        validation_alias=AliasChoices(
            "VOICEVOX_API_ORIGIN", "VOICEVOX_ORIGIN", "voicevox_origin"
        ),
    )
    voicevox_speaker: int = Field(
        default=1,
        ge=0,
        validation_alias=AliasChoices("VOICEVOX_SPEAKER", "voicevox_speaker"),
    )
    synthesis_timeout: float = Field(
        default=30.0,
        ge=1,
        validation_alias=AliasChoices("VOICEVOX_TIMEOUT", "synthesis_timeout"),
    )
    replace: list[ReplaceRule] = Field(
        default_factory=list,
        validation_alias=AliasChoices("STREAMER_REPLACE", "replace"),
        description="Ordered literal substitutions applied before synthesis.",
    )

    # Narration
    prompt: str = Field(
        default=DEFAULT_PROMPT,
        validation_alias=AliasChoices("STREAMER_PROMPT", "prompt"),
    )
    max_history: int = Field(
        default=10,
        ge=0,
        validation_alias=AliasChoices("STREAMER_MAX_HISTORY", "max_history"),
    )
    max_tool_steps: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("STREAMER_MAX_TOOL_STEPS", "max_tool_steps"),
    )
    segment_terminals: str = Field(
        default="。．！？!?",
        min_length=1,
        validation_alias=AliasChoices(
            "STREAMER_SEGMENT_TERMINALS", "segment_terminals"
        ),
    )
    queue_size: int = Field(
        default=64,
        ge=1,
        validation_alias=AliasChoices("STREAMER_QUEUE_SIZE", "queue_size"),
    )
    tool_modules: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("STREAMER_TOOL_MODULES", "tool_modules"),
        description="`module:attribute` references that provide extra tools.",
    )

    # Avatars
    avatar_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("STREAMER_AVATAR_ENABLED", "avatar_enabled"),
    )
    avatar_dir: Path = Field(
        default_factory=lambda: PROJECT_ROOT / "avatars",
        validation_alias=AliasChoices("STREAMER_AVATAR_DIR", "avatar_dir"),
    )

    # Idle narration
    idle_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("STREAMER_IDLE_TIMEOUT", "idle_timeout"),
    )
    idle_prompt: str = Field(
        default="簡単に雑談してください",
        validation_alias=AliasChoices("STREAMER_IDLE_PROMPT", "idle_prompt"),
    )

    @property
    def voicevox_base_url(self) -> str:
        return str(self.voicevox_origin).rstrip("/")

    @property
    def openai_endpoint(self) -> str:
        return str(self.openai_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["DEFAULT_PROMPT", "ReplaceRule", "Settings", "get_settings"]
