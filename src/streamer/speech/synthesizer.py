"""
Speech synthesis against a VOICEVOX engine.

Each fragment costs two sequential calls:

    POST /audio_query?speaker=N&text=...   -> synthesis parameters (JSON)
    POST /synthesis?speaker=N  (JSON body) -> WAV bytes

Text is normalised first: the configured literal substitutions run in order
(to fix mispronounced names and loanwords) and internal whitespace is collapsed.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Sequence

import httpx

from ..cancellation import CancellationToken
from ..config import ReplaceRule, Settings
from ..errors import SynthesisError

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_MAX_ERROR_BODY = 500


class VoicevoxSynthesizer:
    """Turn text fragments into audio bytes through a VOICEVOX engine."""

    def __init__(
        self,
        origin: str,
        *,
        speaker: int = 1,
        replace: Sequence[ReplaceRule] = (),
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.origin = origin.rstrip("/")
        self.speaker = speaker
        self.replace_rules: list[ReplaceRule] = list(replace)
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "VoicevoxSynthesizer":
        return cls(
            settings.voicevox_base_url,
            speaker=settings.voicevox_speaker,
            replace=settings.replace,
            timeout=settings.synthesis_timeout,
            http_client=http_client,
        )

    def configure(self, settings: Settings) -> None:
        self.origin = settings.voicevox_base_url
        self.speaker = settings.voicevox_speaker
        self.replace_rules = list(settings.replace)

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            logger.info("Created httpx.AsyncClient for VOICEVOX at %s", self.origin)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def normalize(self, text: str) -> str:
        for rule in self.replace_rules:
            text = text.replace(rule.from_, rule.to)
        return _WHITESPACE_RE.sub(" ", text).strip()

    async def synthesize(self, text: str, token: CancellationToken) -> bytes:
        """
        Synthesize one fragment.

        Raises:
            OperationCancelled: the token was cancelled before or during either call.
            SynthesisError: either call failed; ``stage`` names which one.
        """
        token.raise_if_cancelled()
        normalized = self.normalize(text)

        query = await self._audio_query(normalized, token)
        token.raise_if_cancelled()

        audio = await self._render(query, token)
        token.raise_if_cancelled()

        logger.debug(
            "VOICEVOX synthesized %d bytes for text: %s", len(audio), normalized[:50]
        )
        return audio

    async def _audio_query(self, text: str, token: CancellationToken) -> Any:
        url = f"{self.origin}/audio_query"
        response = await self._post(
            "audio_query",
            url,
            token,
            params={"speaker": self.speaker, "text": text},
        )
        try:
            return response.json()
        except ValueError as exc:
            raise SynthesisError(
                "audio_query",
                f"POST {url} returned invalid JSON: {exc}",
                status_code=response.status_code,
                body=_preview_body(response),
            ) from exc

    async def _render(self, query: Any, token: CancellationToken) -> bytes:
        url = f"{self.origin}/synthesis"
        response = await self._post(
            "synthesis", url, token, params={"speaker": self.speaker}, json=query
        )
        return response.content

    async def _post(
        self,
        stage: str,
        url: str,
        token: CancellationToken,
        *,
        params: dict[str, Any],
        json: Any = None,
    ) -> httpx.Response:
        client = self._get_http_client()
        try:
            response = await token.guard(client.post(url, params=params, json=json))
        except httpx.HTTPError as exc:
            raise SynthesisError(stage, f"POST {url} failed: {exc}") from exc

        if not response.is_success:
            raise SynthesisError(
                stage,
                f"POST {url} was rejected",
                status_code=response.status_code,
                body=_preview_body(response),
            )
        return response


def _preview_body(response: httpx.Response) -> str:
    text = response.text
    if len(text) > _MAX_ERROR_BODY:
        return text[:_MAX_ERROR_BODY] + "..."
    return text


__all__ = ["VoicevoxSynthesizer"]
