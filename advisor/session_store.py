from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from .config import AdvisorConfig
from .metrics import KEYS


logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")


class SessionTurn(BaseModel):
    model_config = ConfigDict(extra="ignore")
    role: Role
    content: str
    timestamp: str


_turns_adapter = TypeAdapter(list[SessionTurn])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    """
    Durable per-call turn history: one JSON array file per call identifier.

    Appends for one call are serialized by a per-call lock; different calls never
    contend. Writes go to a temp file and are swapped in with os.replace, so a reader
    never sees a half-written file.
    """

    def __init__(
        self,
        *,
        root: str | Path,
        max_turns: int = 100,
        max_file_bytes: int = 1_048_576,
        metrics: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._max_turns = max(1, int(max_turns))
        self._max_file_bytes = max(1, int(max_file_bytes))
        self._metrics = metrics
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def from_config(cfg: AdvisorConfig, *, metrics: Any | None = None) -> "SessionStore":
        return SessionStore(
            root=cfg.sessions_dir,
            max_turns=cfg.session_max_turns,
            max_file_bytes=cfg.session_max_file_bytes,
            metrics=metrics,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def path_for(self, call_id: str) -> Path:
        cid = str(call_id or "")
        if _SAFE_ID_RE.match(cid):
            name = cid
        else:
            name = "id-" + hashlib.sha256(cid.encode("utf-8", errors="replace")).hexdigest()[:32]
        return self._root / f"{name}.json"

    def read(self, call_id: str) -> list[SessionTurn]:
        with self._lock_for(call_id):
            return self._read_unlocked(call_id)

    def append(self, call_id: str, role: Role, content: str) -> SessionTurn:
        turn = SessionTurn(role=role, content=str(content), timestamp=_utc_now_iso())
        with self._lock_for(call_id):
            turns = self._read_unlocked(call_id)
            turns.append(turn)
            if len(turns) > self._max_turns:
                turns = turns[-self._max_turns :]
            self._write_unlocked(call_id, turns)
        logger.info("Saved message to conversation: call_id=%s role=%s", call_id, role)
        return turn

    def delete(self, call_id: str) -> bool:
        with self._lock_for(call_id):
            path = self.path_for(call_id)
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                removed = False
            except OSError as e:
                logger.error("Error deleting conversation: call_id=%s error=%s", call_id, e)
                removed = False
        with self._locks_guard:
            self._locks.pop(call_id, None)
        return removed

    def sweep(self, max_age_s: float) -> int:
        """Delete every record whose file was last modified more than max_age_s ago."""
        cutoff = time.time() - float(max_age_s)
        swept: set[Path] = set()
        for path in self._root.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    swept.add(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Error sweeping conversation file: path=%s error=%s", path, e)
        removed = len(swept)
        if swept:
            with self._locks_guard:
                for cid in [c for c in self._locks if self.path_for(c) in swept]:
                    del self._locks[cid]
        if removed:
            logger.info("Cleaned up old conversations: removed=%d max_age_s=%d", removed, int(max_age_s))
            if self._metrics is not None:
                self._metrics.inc(KEYS["session_swept_total"], removed)
        return removed

    def _lock_for(self, call_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(call_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[call_id] = lock
            return lock

    def _read_unlocked(self, call_id: str) -> list[SessionTurn]:
        path = self.path_for(call_id)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error("Error reading conversation: call_id=%s error=%s", call_id, e)
            return []
        if size > self._max_file_bytes:
            logger.warning(
                "Conversation file too large, resetting: call_id=%s bytes=%d limit=%d",
                call_id,
                size,
                self._max_file_bytes,
            )
            self._inc_corrupt()
            return []
        try:
            turns = _turns_adapter.validate_json(path.read_bytes())
        except (OSError, ValidationError, ValueError) as e:
            logger.error("Error reading conversation, treating as empty: call_id=%s error=%s", call_id, e)
            self._inc_corrupt()
            return []
        return list(turns[-self._max_turns :])

    def _write_unlocked(self, call_id: str, turns: list[SessionTurn]) -> None:
        path = self.path_for(call_id)
        tmp = path.with_name(f".{path.stem}.{uuid.uuid4().hex}.tmp")
        payload = json.dumps([t.model_dump() for t in turns], indent=2, ensure_ascii=False)
        try:
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            logger.error("Error saving message: call_id=%s error=%s", call_id, e)
            try:
                tmp.unlink()
            except OSError:
                pass

    def _inc_corrupt(self) -> None:
        if self._metrics is not None:
            self._metrics.inc(KEYS["session_corrupt_total"], 1)
