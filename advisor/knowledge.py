from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Optional

from .cache import TieredCache, cache_key
from .config import AdvisorConfig
from .metrics import KEYS


logger = logging.getLogger(__name__)

KB_CACHE_KEY = cache_key("kb", "all")

_NON_WORD_RE = re.compile(r"[^\w\s]")
_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")


def extract_keywords(text: str) -> frozenset[str]:
    """Lower-case, strip punctuation, split on whitespace, keep tokens longer than 3 chars."""
    cleaned = _NON_WORD_RE.sub("", (text or "").lower())
    return frozenset(w for w in cleaned.split() if len(w) > 3)


@dataclass(slots=True)
class KnowledgeChunk:
    source: str
    content: str
    keywords: frozenset[str]
    # Query-dependent; not part of identity.
    score: int = field(default=0, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "content": self.content,
            "keywords": sorted(self.keywords),
        }

    @staticmethod
    def from_payload(obj: Any) -> Optional["KnowledgeChunk"]:
        if not isinstance(obj, dict):
            return None
        content = obj.get("content")
        source = obj.get("source")
        if not isinstance(content, str) or not isinstance(source, str) or not content:
            return None
        raw_keywords = obj.get("keywords")
        if isinstance(raw_keywords, list):
            keywords = frozenset(str(k) for k in raw_keywords)
        else:
            keywords = extract_keywords(content)
        return KnowledgeChunk(source=source, content=content, keywords=keywords)


def split_chunks(text: str, *, source: str) -> list[KnowledgeChunk]:
    out: list[KnowledgeChunk] = []
    for para in _PARAGRAPH_BREAK_RE.split(text or ""):
        content = para.strip()
        if not content:
            continue
        out.append(KnowledgeChunk(source=source, content=content, keywords=extract_keywords(content)))
    return out


def discover_files(root: Path, suffix: str = ".txt") -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(p for p in root.rglob(f"*{suffix}") if p.is_file())


def read_file_chunks(path: Path, root: Path) -> list[KnowledgeChunk]:
    text = path.read_text(encoding="utf-8")
    try:
        source = path.relative_to(root).as_posix()
    except ValueError:
        source = path.name
    return split_chunks(text, source=source)


def build_chunks(
    root: Path,
    *,
    suffix: str = ".txt",
    workers: int = 4,
    file_timeout_ms: int = 5000,
) -> list[KnowledgeChunk]:
    """
    Parse every reference file under root into chunks.

    Files are parsed in a thread pool; any file that fails or exceeds its timeout is
    retried once sequentially and skipped if it fails again. Output order follows the
    sorted file list, independent of completion order.
    """

    files = discover_files(root, suffix)
    if not files:
        logger.info("No knowledge base files found: directory=%s", root)
        return []

    results: dict[int, list[KnowledgeChunk]] = {}
    failed: list[int] = []
    timeout_s = max(0.001, file_timeout_ms / 1000.0)

    pool = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="kb-build")
    try:
        futures = [pool.submit(read_file_chunks, p, root) for p in files]
        for i, fut in enumerate(futures):
            try:
                results[i] = fut.result(timeout=timeout_s)
            except Exception as e:
                logger.warning("Worker parse failed, retrying sequentially: file=%s error=%s", files[i], e)
                failed.append(i)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    for i in failed:
        try:
            results[i] = read_file_chunks(files[i], root)
        except (OSError, UnicodeDecodeError) as e:
            logger.error("Failed to process file: file=%s error=%s", files[i], e)

    chunks: list[KnowledgeChunk] = []
    for i in range(len(files)):
        chunks.extend(results.get(i, []))

    logger.info(
        "Knowledge base loaded: total_files=%d successful_files=%d total_chunks=%d",
        len(files),
        len(results),
        len(chunks),
    )
    return chunks


def format_chunks_for_context(chunks: Iterable[KnowledgeChunk]) -> str:
    return "\n\n".join(f"[From {c.source}]\n{c.content}" for c in chunks)


class KnowledgeIndex:
    """
    Keyword-overlap retrieval over paragraph chunks.

    The full collection lives in the cache under one key; a bounded hot-set of recently
    returned chunks answers first. The in-process snapshot is replaced wholesale, never
    mutated, so concurrent queries see either the old or the new collection.
    """

    def __init__(
        self,
        *,
        root: str | Path,
        cache: TieredCache,
        ttl_s: int = 15 * 60,
        suffix: str = ".txt",
        hot_set_size: int = 1000,
        top_k: int = 3,
        workers: int = 4,
        file_timeout_ms: int = 5000,
        metrics: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._cache = cache
        self._ttl_s = int(ttl_s)
        self._suffix = suffix
        self._hot_set_size = max(1, int(hot_set_size))
        self._top_k = max(1, int(top_k))
        self._workers = max(1, int(workers))
        self._file_timeout_ms = int(file_timeout_ms)
        self._metrics = metrics

        self._snapshot: tuple[KnowledgeChunk, ...] = ()
        self._loaded = False
        self._build_lock = threading.Lock()

        self._hot: OrderedDict[str, KnowledgeChunk] = OrderedDict()
        self._hot_lock = threading.Lock()

        # (raw payload, parsed chunks) of the last cached read; reused while the cache returns the same object.
        self._parsed_memo: tuple[Any, tuple[KnowledgeChunk, ...]] = (None, ())

    @staticmethod
    def from_config(cfg: AdvisorConfig, *, cache: TieredCache, metrics: Any | None = None) -> "KnowledgeIndex":
        return KnowledgeIndex(
            root=cfg.knowledge_base_dir,
            cache=cache,
            ttl_s=cfg.kb_ttl_s,
            suffix=cfg.kb_file_suffix,
            hot_set_size=cfg.kb_hot_set_size,
            top_k=cfg.kb_top_k,
            workers=cfg.kb_build_workers,
            file_timeout_ms=cfg.kb_file_timeout_ms,
            metrics=metrics,
        )

    @property
    def chunks(self) -> tuple[KnowledgeChunk, ...]:
        return self._snapshot

    @property
    def hot_set_size(self) -> int:
        with self._hot_lock:
            return len(self._hot)

    def load(self) -> int:
        """Populate the index at startup, preferring the cached collection over a rebuild."""
        logger.info("Preloading knowledge base: directory=%s", self._root)
        if not self._root.exists():
            logger.warning("Knowledge base directory does not exist, creating empty directory: path=%s", self._root)
            self._root.mkdir(parents=True, exist_ok=True)
            self._publish(())
            self._cache.set(KB_CACHE_KEY, [], self._ttl_s)
            return 0

        cached = self._read_cached()
        if cached is not None:
            logger.info("Using cached knowledge base: chunks=%d", len(cached))
            self._publish(cached)
            return len(cached)
        return self.rebuild()

    def rebuild(self) -> int:
        with self._build_lock:
            chunks = tuple(
                build_chunks(
                    self._root,
                    suffix=self._suffix,
                    workers=self._workers,
                    file_timeout_ms=self._file_timeout_ms,
                )
            )
            self._publish(chunks)
            self._cache.set(KB_CACHE_KEY, [c.to_payload() for c in chunks], self._ttl_s)
        if self._metrics is not None:
            self._metrics.inc(KEYS["kb_rebuild_total"], 1)
        return len(chunks)

    def query(self, text: str) -> list[KnowledgeChunk]:
        q = extract_keywords(text)
        if not q:
            return []

        hot = self._query_hot(q)
        if hot:
            logger.debug("Using hot-set chunks: count=%d", len(hot))
            self._inc(KEYS["kb_hot_set_hit_total"])
            return hot

        self._inc(KEYS["kb_full_scan_total"])
        scored: list[KnowledgeChunk] = []
        for c in self._collection():
            overlap = len(c.keywords & q)
            if overlap > 0:
                scored.append(replace(c, score=overlap))
        # list.sort is stable: equal scores keep collection order.
        scored.sort(key=lambda c: -c.score)
        top = scored[: self._top_k]
        self._promote(top)
        return top

    def _query_hot(self, q: frozenset[str]) -> list[KnowledgeChunk]:
        with self._hot_lock:
            matches = [c for c in self._hot.values() if c.keywords & q]
        matches.sort(key=lambda c: -c.score)
        return [replace(c) for c in matches[: self._top_k]]

    def _promote(self, chunks: list[KnowledgeChunk]) -> None:
        with self._hot_lock:
            for c in chunks:
                if c.content in self._hot:
                    # Refresh the attached score without changing insertion order.
                    self._hot[c.content] = replace(c)
                    continue
                while len(self._hot) >= self._hot_set_size:
                    self._hot.popitem(last=False)
                self._hot[c.content] = replace(c)

    def _collection(self) -> tuple[KnowledgeChunk, ...]:
        cached = self._read_cached()
        if cached is not None:
            return cached
        if self._loaded:
            logger.info("Knowledge cache expired, republishing snapshot: chunks=%d", len(self._snapshot))
            snapshot = self._snapshot
            self._cache.set(KB_CACHE_KEY, [c.to_payload() for c in snapshot], self._ttl_s)
            return snapshot
        self.rebuild()
        return self._snapshot

    def _read_cached(self) -> Optional[tuple[KnowledgeChunk, ...]]:
        raw = self._cache.get(KB_CACHE_KEY)
        if not isinstance(raw, list):
            return None
        memo_raw, memo_parsed = self._parsed_memo
        if raw is memo_raw:
            return memo_parsed
        parsed = tuple(c for c in (KnowledgeChunk.from_payload(o) for o in raw) if c is not None)
        self._parsed_memo = (raw, parsed)
        return parsed

    def _publish(self, chunks: tuple[KnowledgeChunk, ...]) -> None:
        self._snapshot = chunks
        self._loaded = True
        if self._metrics is not None and hasattr(self._metrics, "set"):
            self._metrics.set(KEYS["kb_chunks_current"], len(chunks))

    def _inc(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(name, 1)
