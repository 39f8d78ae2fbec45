from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .cache import CacheTTL, TieredCache, cache_key
from .clock import Clock, RealClock
from .config import AdvisorConfig
from .conversation_state import ConversationState, ConversationStateMachine
from .errors import CollaboratorError
from .knowledge import KnowledgeIndex, format_chunks_for_context
from .llm_client import LLMClient, generate_text
from .metrics import KEYS
from .objections import classify_objection, deflection_for, is_booking_intent
from .prompt import build_persona, build_prompt
from .session_store import SessionStore, SessionTurn
from .telephony import Directive, GatherConfig
from .tts_client import TTSClient


logger = logging.getLogger(__name__)

APOLOGY_TEXT = "Sorry, an error occurred. Please try again."
REPROMPT_TEXT = "Sorry, I didn't hear anything. Please try again."
INTERRUPT_TEXT = "Sorry about that, please go ahead. I'm listening."
UNAVAILABLE_TEXT = "I apologize, but I am currently unable to process your request. Please try again later."


def greeting_text(*, advisor_name: str, org_name: str) -> str:
    return (
        f"Hey, hi there! Awesome to connect! I'm {advisor_name} from {org_name}, here to chat about your "
        "next steps in tech. I'd love to hear about your goals and see how our hands-on programs can fit in. "
        "We've got a free-trial workshop today that could be a cool way to kick things off. "
        f"What caught your eye about {org_name}?"
    )


def response_cache_key(utterance: str, history: list[SessionTurn]) -> str:
    serialized = "|".join(f"{t.role}:{t.content}" for t in history)
    digest = hashlib.sha256(f"{utterance}|{serialized}".encode("utf-8")).hexdigest()
    return cache_key("response", digest)


def caller_metadata_key(call_id: str) -> str:
    return cache_key("conversation", call_id)


class TurnOrchestrator:
    """
    Per-utterance coordinator.

    Every public coroutine returns a Directive; collaborator failures and timeouts are
    converted into an apology at this boundary and never reach the transport.

    Cache and session store calls block (Redis sockets, file I/O). Coroutines here run
    them with asyncio.to_thread; the plain methods (start_call, end_call, sweep) must be
    called from a worker thread when the caller is on the event loop.
    """

    def __init__(
        self,
        *,
        cfg: AdvisorConfig,
        cache: TieredCache,
        knowledge: KnowledgeIndex,
        sessions: SessionStore,
        states: ConversationStateMachine,
        llm: Optional[LLMClient],
        tts: Optional[TTSClient],
        clock: Clock | None = None,
        metrics: Any | None = None,
    ) -> None:
        self._cfg = cfg
        self._cache = cache
        self._ttl = CacheTTL.from_config(cfg)
        self._knowledge = knowledge
        self._sessions = sessions
        self._states = states
        self._llm = llm
        self._tts = tts
        self._clock = clock or RealClock()
        self._metrics = metrics
        self._audio_dir = Path(cfg.audio_dir)
        self._persona = build_persona(advisor_name=cfg.advisor_name, org_name=cfg.org_name)
        self._gather = GatherConfig(timeout_s=cfg.gather_timeout_s, barge_in=cfg.barge_in)

    @property
    def gather(self) -> GatherConfig:
        return self._gather

    @property
    def degraded(self) -> bool:
        return self._llm is None

    def start_call(self, call_id: str, metadata: Optional[dict[str, Any]] = None) -> Directive:
        meta = dict(metadata or {})
        meta.setdefault("day", datetime.now().strftime("%A"))
        self._states.initialize(call_id, meta)
        self._cache.set(caller_metadata_key(call_id), meta, self._ttl.conversation)
        text = greeting_text(advisor_name=self._cfg.advisor_name, org_name=self._cfg.org_name)
        self._sessions.append(call_id, "assistant", text)
        return Directive.speak(text, self._gather)

    async def handle_turn(self, call_id: str, utterance: str, *, interrupted: bool = False) -> Directive:
        started_ms = self._clock.now_ms()
        self._inc(KEYS["turns_total"])
        await self._ensure_conversation(call_id)
        try:
            return await self._run_turn(call_id, (utterance or "").strip(), interrupted=interrupted)
        except asyncio.CancelledError:
            raise
        except (CollaboratorError, TimeoutError) as e:
            self._inc(KEYS["turn_failures_total"])
            logger.error("Turn failed: call_id=%s error=%s: %s", call_id, type(e).__name__, e)
            return self._apology(call_id)
        except Exception:
            self._inc(KEYS["turn_failures_total"])
            logger.exception("Unexpected turn failure: call_id=%s", call_id)
            return self._apology(call_id)
        finally:
            self._observe(KEYS["turn_latency_ms"], self._clock.now_ms() - started_ms)

    def end_call(self, call_id: str) -> None:
        """Tear down both per-call stores together."""
        self._states.cleanup(call_id)
        self._sessions.delete(call_id)
        self._cache.delete(caller_metadata_key(call_id))
        logger.info("Call ended, per-call state removed: call_id=%s", call_id)

    def sweep(self) -> dict[str, int]:
        stale = self._states.sweep_stale(self._cfg.stale_timeout_ms)
        for call_id in stale:
            self._sessions.delete(call_id)
            self._cache.delete(caller_metadata_key(call_id))
        old_sessions = self._sessions.sweep(self._cfg.session_retention_s)
        old_audio = self._sweep_audio(self._cfg.session_retention_s)
        return {"stale_calls": len(stale), "old_sessions": old_sessions, "old_audio": old_audio}

    async def _run_turn(self, call_id: str, utterance: str, *, interrupted: bool) -> Directive:
        if interrupted and self._states.record_interruption(call_id):
            self._inc(KEYS["turn_interrupt_stop_total"])
            self._states.transition(call_id, ConversationState.LISTENING)
            return Directive.speak(INTERRUPT_TEXT, self._gather)

        self._states.transition(call_id, ConversationState.PROCESSING)

        if not utterance:
            self._inc(KEYS["turn_empty_total"])
            logger.warning("No speech input received: call_id=%s", call_id)
            self._states.transition(call_id, ConversationState.LISTENING)
            return Directive.speak(REPROMPT_TEXT, self._gather)

        if is_booking_intent(utterance):
            self._states.record_booking_attempt(call_id)

        objection = classify_objection(utterance)
        if objection is not None:
            self._states.record_objection(call_id, objection)
            reply = deflection_for(objection)
        elif self._llm is None:
            self._inc(KEYS["turn_degraded_total"])
            logger.error("Generation unavailable, answering with fallback: call_id=%s", call_id)
            self._states.transition(call_id, ConversationState.LISTENING)
            return Directive.speak(UNAVAILABLE_TEXT, self._gather)
        else:
            reply = await self._generate_reply(self._llm, call_id, utterance)

        await asyncio.to_thread(self._record_exchange, call_id, utterance, reply)
        self._states.transition(call_id, ConversationState.SPEAKING)

        if self._tts is None:
            self._inc(KEYS["turn_degraded_total"])
            logger.warning("Synthesis unavailable, speaking reply as text: call_id=%s", call_id)
            return Directive.speak(reply, self._gather)

        audio_url = await self._synthesize(self._tts, call_id, reply)
        return Directive.play(audio_url, self._gather)

    def _record_exchange(self, call_id: str, utterance: str, reply: str) -> None:
        self._sessions.append(call_id, "user", utterance)
        self._sessions.append(call_id, "assistant", reply)

    async def _generate_reply(self, llm: LLMClient, call_id: str, utterance: str) -> str:
        history = await asyncio.to_thread(self._sessions.read, call_id)
        key = response_cache_key(utterance, history)
        cached = await asyncio.to_thread(self._cache.get, key)
        if isinstance(cached, str) and cached.strip():
            self._inc(KEYS["response_cache_hit_total"])
            logger.debug("Using cached response: call_id=%s", call_id)
            return cached

        chunks = await asyncio.to_thread(self._knowledge.query, utterance)
        logger.info("Found relevant knowledge chunks: call_id=%s count=%d", call_id, len(chunks))
        rec = self._states.get(call_id)
        prompt = build_prompt(
            persona=self._persona,
            utterance=utterance,
            context=format_chunks_for_context(chunks),
            history=history,
            caller_metadata=rec.metadata if rec is not None else None,
            history_window=self._cfg.history_window,
        )

        t0 = self._clock.now_ms()
        try:
            reply = await self._clock.run_with_timeout(
                generate_text(llm, prompt=prompt),
                self._cfg.generation_timeout_ms,
            )
        except (CollaboratorError, TimeoutError):
            self._inc(KEYS["generation_failures_total"])
            raise
        finally:
            self._observe(KEYS["generation_latency_ms"], self._clock.now_ms() - t0)

        await asyncio.to_thread(self._cache.set, key, reply, self._ttl.response)
        logger.info("Generated reply: call_id=%s chars=%d", call_id, len(reply))
        return reply

    async def _synthesize(self, tts: TTSClient, call_id: str, reply: str) -> str:
        t0 = self._clock.now_ms()
        try:
            audio = await self._clock.run_with_timeout(
                tts.synthesize(text=reply),
                self._cfg.synthesis_timeout_ms,
            )
        except (CollaboratorError, TimeoutError):
            self._inc(KEYS["synthesis_failures_total"])
            raise
        finally:
            self._observe(KEYS["synthesis_latency_ms"], self._clock.now_ms() - t0)

        filename = f"response-{uuid.uuid4().hex}.{self._cfg.deepgram_container or 'wav'}"
        path = self._audio_dir / filename
        await asyncio.to_thread(self._write_audio, path, audio)
        logger.info("Audio file saved: call_id=%s filename=%s bytes=%d", call_id, filename, len(audio))
        return f"{self._cfg.public_base_url.rstrip('/')}/audio/{filename}"

    def _write_audio(self, path: Path, audio: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(audio)

    def _sweep_audio(self, max_age_s: float) -> int:
        if not self._audio_dir.is_dir():
            return 0
        cutoff = time.time() - float(max_age_s)
        removed = 0
        for path in self._audio_dir.glob("response-*"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Error sweeping audio file: path=%s error=%s", path, e)
        if removed:
            logger.info("Cleaned up old audio files: removed=%d", removed)
        return removed

    async def _ensure_conversation(self, call_id: str) -> None:
        if call_id in self._states:
            return
        # Record lost (restart or another worker): restore caller details if the cache still has them.
        cached = await asyncio.to_thread(self._cache.get, caller_metadata_key(call_id))
        meta = cached if isinstance(cached, dict) else {}
        logger.warning("No conversation record, reinitializing: call_id=%s restored=%s", call_id, bool(meta))
        self._states.initialize(call_id, meta)

    def _apology(self, call_id: str) -> Directive:
        self._states.transition(call_id, ConversationState.LISTENING)
        return Directive.speak(APOLOGY_TEXT, self._gather)

    def _inc(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(name, 1)

    def _observe(self, name: str, value: int) -> None:
        if self._metrics is not None:
            self._metrics.observe(name, int(value))
