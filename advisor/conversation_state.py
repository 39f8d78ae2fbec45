from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from .clock import Clock, RealClock
from .metrics import KEYS


logger = logging.getLogger(__name__)

DEFAULT_STALE_TIMEOUT_MS = 5 * 60 * 1000
INTERRUPTION_STOP_THRESHOLD = 2


class ConversationState(str, Enum):
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    BOOKING = "booking"
    CLOSING = "closing"


# Advisory only: transition() never rejects, it logs when a move is not listed here.
EXPECTED_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    ConversationState.GREETING: frozenset({ConversationState.LISTENING, ConversationState.PROCESSING}),
    ConversationState.LISTENING: frozenset({ConversationState.PROCESSING, ConversationState.CLOSING}),
    ConversationState.PROCESSING: frozenset(
        {ConversationState.SPEAKING, ConversationState.LISTENING, ConversationState.CLOSING}
    ),
    ConversationState.SPEAKING: frozenset(
        {
            ConversationState.LISTENING,
            ConversationState.PROCESSING,
            ConversationState.BOOKING,
            ConversationState.CLOSING,
        }
    ),
    ConversationState.BOOKING: frozenset(
        {ConversationState.LISTENING, ConversationState.PROCESSING, ConversationState.CLOSING}
    ),
    ConversationState.CLOSING: frozenset(),
}


def is_expected_transition(old: ConversationState, new: ConversationState) -> bool:
    return old == new or new in EXPECTED_TRANSITIONS.get(old, frozenset())


@dataclass(slots=True)
class ConversationMetadata:
    call_id: str
    state: ConversationState
    last_interaction_ms: int
    metadata: dict[str, Any] = field(default_factory=dict)
    interruptions: int = 0
    booking_attempts: int = 0
    objections: set[str] = field(default_factory=set)


class ConversationStateMachine:
    """
    In-memory per-call bookkeeping: state, interruption count, booking attempts, objections.

    Access is through one synchronized mapping; callers receive copies, never the live
    record.
    """

    def __init__(self, *, clock: Clock | None = None, metrics: Any | None = None) -> None:
        self._clock = clock or RealClock()
        self._metrics = metrics
        self._records: dict[str, ConversationMetadata] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._records

    def initialize(self, call_id: str, metadata: Optional[dict[str, Any]] = None) -> ConversationMetadata:
        rec = ConversationMetadata(
            call_id=call_id,
            state=ConversationState.GREETING,
            last_interaction_ms=self._clock.now_ms(),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._records[call_id] = rec
        logger.info("Initialized conversation: call_id=%s state=%s", call_id, rec.state.value)
        return self._copy(rec)

    def get(self, call_id: str) -> Optional[ConversationMetadata]:
        with self._lock:
            rec = self._records.get(call_id)
            return self._copy(rec) if rec is not None else None

    def transition(self, call_id: str, new_state: ConversationState | str) -> bool:
        target = ConversationState(new_state)
        with self._lock:
            rec = self._records.get(call_id)
            if rec is None:
                return False
            old = rec.state
            rec.state = target
            rec.last_interaction_ms = self._clock.now_ms()
        if not is_expected_transition(old, target):
            logger.warning(
                "Unexpected conversation transition: call_id=%s from=%s to=%s",
                call_id,
                old.value,
                target.value,
            )
        logger.info("Updated conversation state: call_id=%s new_state=%s", call_id, target.value)
        return True

    def record_interruption(self, call_id: str) -> bool:
        """Returns True once the call has been interrupted INTERRUPTION_STOP_THRESHOLD times."""
        with self._lock:
            rec = self._records.get(call_id)
            if rec is None:
                return False
            rec.interruptions += 1
            rec.last_interaction_ms = self._clock.now_ms()
            count = rec.interruptions
        should_stop = count >= INTERRUPTION_STOP_THRESHOLD
        self._inc(KEYS["interruptions_total"])
        logger.info(
            "Handled interruption: call_id=%s interruptions=%d should_stop=%s",
            call_id,
            count,
            should_stop,
        )
        return should_stop

    def record_booking_attempt(self, call_id: str) -> int:
        with self._lock:
            rec = self._records.get(call_id)
            if rec is None:
                return 0
            rec.booking_attempts += 1
            attempts = rec.booking_attempts
        self._inc(KEYS["booking_attempts_total"])
        logger.info("Tracked booking attempt: call_id=%s attempts=%d", call_id, attempts)
        return attempts

    def record_objection(self, call_id: str, category: str) -> None:
        with self._lock:
            rec = self._records.get(call_id)
            if rec is None:
                return
            rec.objections.add(category)
            total = len(rec.objections)
        self._inc(KEYS["objections_total"])
        logger.info("Tracked objection: call_id=%s objection=%s total_objections=%d", call_id, category, total)

    def is_stale(self, call_id: str, timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS) -> bool:
        now = self._clock.now_ms()
        with self._lock:
            rec = self._records.get(call_id)
            if rec is None:
                return True
            last = rec.last_interaction_ms
        stale = now - last > int(timeout_ms)
        if stale:
            logger.info("Conversation is stale: call_id=%s idle_ms=%d", call_id, now - last)
        return stale

    def cleanup(self, call_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(call_id, None) is not None
        logger.info("Cleaned up conversation: call_id=%s", call_id)
        return removed

    def sweep_stale(self, timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS) -> list[str]:
        now = self._clock.now_ms()
        with self._lock:
            stale = [cid for cid, rec in self._records.items() if now - rec.last_interaction_ms > int(timeout_ms)]
            for cid in stale:
                del self._records[cid]
        if stale:
            self._inc(KEYS["stale_swept_total"], len(stale))
            logger.info("Swept stale conversations: count=%d", len(stale))
        return stale

    @staticmethod
    def _copy(rec: ConversationMetadata) -> ConversationMetadata:
        return replace(rec, metadata=dict(rec.metadata), objections=set(rec.objections))

    def _inc(self, name: str, value: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.inc(name, value)
