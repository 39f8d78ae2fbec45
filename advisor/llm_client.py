from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol

from .errors import ConfigurationError, EmptyReplyError, GenerationError


class LLMClient(Protocol):
    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


async def generate_text(client: LLMClient, *, prompt: str) -> str:
    """
    Drain a streaming client into one reply.

    Provider failures surface as GenerationError; a blank reply as EmptyReplyError.
    """

    parts: list[str] = []
    try:
        async for delta in client.stream_text(prompt=prompt):
            if delta:
                parts.append(str(delta))
    except GenerationError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise GenerationError(f"generation failed: {type(e).__name__}: {e}") from e
    reply = "".join(parts).strip()
    if not reply:
        raise EmptyReplyError("generation returned an empty reply")
    return reply


@dataclass
class FakeLLMClient:
    tokens: list[str] = field(default_factory=lambda: ["Sounds ", "great!"])
    fail_with: Optional[Exception] = None
    delay_s: float = 0.0
    prompts: list[str] = field(default_factory=list)

    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        # Deterministic token stream; prompts are recorded for assertions.
        self.prompts.append(prompt)
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is not None:
            raise self.fail_with
        for tok in self.tokens:
            yield tok

    async def aclose(self) -> None:
        return


class GeminiLLMClient:
    """
    Gemini streaming adapter using the official Google Gen AI SDK (google-genai).

    Lazily imports `google-genai` so tests do not require credentials or network.
    """

    def __init__(self, *, api_key: str = "", model: str = "gemini-2.0-flash") -> None:
        self._api_key = api_key
        self._model = model
        self._client: Any = None
        self._aclient: Any = None

    def _ensure_client(self) -> Any:
        if self._aclient is not None:
            return self._aclient
        try:
            from google import genai  # type: ignore[import-not-found]
        except Exception as e:
            raise ConfigurationError(
                "GeminiLLMClient requires the dependency 'google-genai'. "
                "Install with: python3 -m pip install -e ."
            ) from e
        self._client = genai.Client(api_key=self._api_key)
        # Async client (aio) owns HTTP session lifecycle.
        self._aclient = self._client.aio
        return self._aclient

    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        aclient = self._ensure_client()

        # Streaming API: may yield a final empty chunk; drain the stream to completion.
        stream = await aclient.models.generate_content_stream(model=self._model, contents=prompt)
        async for chunk in stream:
            txt = getattr(chunk, "text", None)
            if txt:
                yield str(txt)
                continue

            # Fallback: walk candidates->content->parts, skipping thought parts.
            candidates = getattr(chunk, "candidates", None) or []
            if not candidates:
                continue
            content = getattr(candidates[0], "content", None)
            parts = getattr(content, "parts", None) or []
            buf = [str(p.text) for p in parts if getattr(p, "text", None) and not getattr(p, "thought", False)]
            if buf:
                yield "".join(buf)

    async def aclose(self) -> None:
        if self._aclient is not None:
            try:
                await self._aclient.aclose()
            finally:
                self._aclient = None
                self._client = None


class OpenAILLMClient:
    """
    OpenAI Responses streaming adapter.

    Lazy-imports the `openai` package; only output text deltas are emitted.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-5-mini",
        reasoning_effort: str = "minimal",
        timeout_ms: int = 8000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.reasoning_effort = (reasoning_effort or "minimal").strip().lower()
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise ConfigurationError(
                "OpenAILLMClient requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        client = self._ensure_client()
        stream = await client.responses.create(
            model=self.model,
            input=prompt,
            stream=True,
            reasoning={"effort": self.reasoning_effort},
            timeout=max(1.0, self.timeout_ms / 1000.0),
        )
        async for event in stream:
            if str(getattr(event, "type", "") or "") != "response.output_text.delta":
                continue
            delta = getattr(event, "delta", None)
            if delta:
                yield str(delta)

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None
