from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from .errors import EmptyAudioError, SynthesisError


logger = logging.getLogger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class TTSClient(Protocol):
    async def synthesize(self, *, text: str) -> bytes: ...

    async def aclose(self) -> None: ...


def _require_text(text: str) -> str:
    if not isinstance(text, str) or not text.strip():
        raise SynthesisError("text input must be a non-empty string")
    return text


class DeepgramTTSClient:
    """Deepgram REST text-to-speech; returns one playable container (WAV by default)."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "aura-asteria-en",
        encoding: str = "linear16",
        container: str = "wav",
        timeout_s: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._params = {"model": model, "encoding": encoding, "container": container}
        self._http = http or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http = http is None

    async def synthesize(self, *, text: str) -> bytes:
        body = _require_text(text)
        logger.debug("Sending text-to-speech request: model=%s chars=%d", self._params["model"], len(body))
        try:
            resp = await self._http.post(
                DEEPGRAM_SPEAK_URL,
                params=self._params,
                headers={
                    "Authorization": f"Token {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={"text": body},
            )
        except httpx.HTTPError as e:
            raise SynthesisError(f"Deepgram request failed: {e}") from e
        if resp.status_code >= 400:
            raise SynthesisError(f"Deepgram HTTP error {resp.status_code}: {resp.text[:200]}")
        audio = resp.content
        if not audio:
            raise EmptyAudioError("Deepgram returned empty audio")
        logger.info("Speech synthesis completed: bytes=%d", len(audio))
        return audio

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


@dataclass
class FakeTTSClient:
    audio: bytes = b"RIFF\x24\x00\x00\x00WAVEfmt "
    fail_with: Optional[Exception] = None
    delay_s: float = 0.0
    texts: list[str] = field(default_factory=list)

    async def synthesize(self, *, text: str) -> bytes:
        body = _require_text(text)
        self.texts.append(body)
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is not None:
            raise self.fail_with
        if not self.audio:
            raise EmptyAudioError("fake synthesizer configured with empty audio")
        return self.audio

    async def aclose(self) -> None:
        return
