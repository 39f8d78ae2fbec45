from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator
from twilio.twiml.voice_response import VoiceResponse

from .errors import InvalidAddressError, TelephonyError


logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")
_PHONE_STRIP_RE = re.compile(r"[\s\-\(\)\.]")


class GatherConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    action: str = "/process-speech"
    timeout_s: int = Field(default=5, ge=1)
    barge_in: bool = True


class Directive(BaseModel):
    """What the transport should do next. Every directive ends by listening again."""

    model_config = ConfigDict(extra="forbid")
    kind: Literal["speak", "play", "listen"]
    text: Optional[str] = None
    audio_url: Optional[str] = None
    gather: GatherConfig = Field(default_factory=GatherConfig)

    @model_validator(mode="after")
    def _check_payload(self) -> "Directive":
        if self.kind == "speak" and not (self.text or "").strip():
            raise ValueError("speak directive requires text")
        if self.kind == "play" and not (self.audio_url or "").strip():
            raise ValueError("play directive requires audio_url")
        return self

    @staticmethod
    def speak(text: str, gather: GatherConfig) -> "Directive":
        return Directive(kind="speak", text=text, gather=gather)

    @staticmethod
    def play(audio_url: str, gather: GatherConfig) -> "Directive":
        return Directive(kind="play", audio_url=audio_url, gather=gather)

    @staticmethod
    def listen(gather: GatherConfig) -> "Directive":
        return Directive(kind="listen", gather=gather)


def render_twiml(directive: Directive) -> str:
    vr = VoiceResponse()
    if directive.kind == "speak":
        vr.say(directive.text)
    elif directive.kind == "play":
        vr.play(directive.audio_url)
    g = directive.gather
    vr.gather(
        input="speech",
        action=g.action,
        method="POST",
        timeout=int(g.timeout_s),
        speech_timeout="auto",
        barge_in=bool(g.barge_in),
    )
    return vr.to_xml()


def normalize_phone_number(raw: Optional[str]) -> str:
    number = _PHONE_STRIP_RE.sub("", str(raw or "").strip())
    if not number:
        raise InvalidAddressError("missing phone number")
    if not _E164_RE.match(number):
        raise InvalidAddressError(f"phone number must be E.164 (e.g. +14155550123): {raw!r}")
    return number


@dataclass(frozen=True, slots=True)
class CallResult:
    sid: str
    status: str


class CallClient(Protocol):
    async def create_call(self, *, to: str, callback_url: str) -> CallResult: ...

    async def aclose(self) -> None: ...


class TwilioCallClient:
    """Outbound call creation through the Twilio REST Calls resource."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_s: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number
        self._http = http or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http = http is None

    async def create_call(self, *, to: str, callback_url: str) -> CallResult:
        number = normalize_phone_number(to)
        logger.info("Initiating Twilio call: to=%s", number)
        url = f"{TWILIO_API_BASE}/Accounts/{self._sid}/Calls.json"
        data = {"Url": callback_url, "To": number, "From": self._from}
        try:
            resp = await self._http.post(url, data=data, auth=(self._sid, self._token))
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to initiate Twilio call: to=%s error=%s", number, e)
            raise TelephonyError(f"Twilio call creation failed: {e}") from e
        result = CallResult(sid=str(payload.get("sid", "")), status=str(payload.get("status", "")))
        logger.info("Call initiated successfully: sid=%s status=%s", result.sid, result.status)
        return result

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


@dataclass
class FakeCallClient:
    status: str = "queued"
    fail_with: Optional[Exception] = None
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def create_call(self, *, to: str, callback_url: str) -> CallResult:
        number = normalize_phone_number(to)
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((number, callback_url))
        return CallResult(sid=f"CA{len(self.calls):032d}", status=self.status)

    async def aclose(self) -> None:
        return
