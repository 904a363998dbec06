from __future__ import annotations

"""
Per-tenant knowledge-base store with a time-bounded cache.

Design:
- One cache entry per tenant slug, replaced wholesale on refetch
- Entries are valid while age < TTL (default 60s); expiry is lazy, on access
- Source reads fail soft: a missing or corrupt kb.json is an empty KB
- No lock is held across file I/O; two concurrent misses both refetch and
  the last write wins, which is harmless because the read is idempotent
"""

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from kbchat.errors import MalformedSourceError
from kbchat.metrics import track_cache_operation
from kbchat.models import KBEntry


# ============================================================================
# Record normalization
# ============================================================================


def _as_qa(record: Dict[str, Any]) -> Optional[KBEntry]:
    if record.get("q") and record.get("a"):
        return KBEntry(question=str(record["q"]), answer=str(record["a"]))
    return None


def _as_title_text(record: Dict[str, Any]) -> Optional[KBEntry]:
    if record.get("title") and record.get("text"):
        return KBEntry(question=str(record["title"]), answer=str(record["text"]))
    return None


# Accepted shapes, tried in order
_RECORD_SHAPES: Tuple[Callable[[Dict[str, Any]], Optional[KBEntry]], ...] = (_as_qa, _as_title_text)


def parse_record(record: Any) -> Optional[KBEntry]:
    """Parse one raw record as {q, a}, else {title, text}, else reject (None).

    An already-normalized KBEntry is returned unchanged.
    """
    if isinstance(record, KBEntry):
        return record
    if not isinstance(record, dict):
        return None
    for shape in _RECORD_SHAPES:
        entry = shape(record)
        if entry is not None:
            return entry
    return None


def normalize_kb(raw: Optional[Iterable[Any]]) -> Tuple[KBEntry, ...]:
    """Normalize raw records, silently dropping ones that fit neither shape."""
    entries: List[KBEntry] = []
    for record in raw or ():
        entry = parse_record(record)
        if entry is not None:
            entries.append(entry)
    return tuple(entries)


def read_kb_source(path: Path) -> List[Any]:
    """Read a raw kb.json. Raises MalformedSourceError on any failure."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise MalformedSourceError(f"Cannot read KB {path}: {e}", path=str(path), cause=e) from e
    if not isinstance(data, list):
        raise MalformedSourceError(f"KB {path} must be a JSON array", path=str(path))
    return data


# ============================================================================
# Cache
# ============================================================================


@dataclass(frozen=True)
class KBCacheEntry:
    tenant_slug: str
    entries: Tuple[KBEntry, ...]
    fetched_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return (now - self.fetched_at) < ttl


class KBStore:
    """Cache-first access to each tenant's KB."""

    def __init__(
        self,
        clients_dir: Path,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.clients_dir = Path(clients_dir)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, KBCacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def kb_path(self, tenant_slug: str) -> Path:
        return self.clients_dir / tenant_slug / "kb.json"

    def get(self, tenant_slug: str) -> Tuple[KBEntry, ...]:
        """Return the tenant's normalized KB, refetching if missing or expired."""
        now = self._clock()
        cached = self._cache.get(tenant_slug)
        if cached is not None and cached.is_fresh(now, self.ttl_seconds):
            self.hits += 1
            track_cache_operation("kb", hit=True)
            return cached.entries

        self.misses += 1
        track_cache_operation("kb", hit=False)
        try:
            raw = read_kb_source(self.kb_path(tenant_slug))
        except MalformedSourceError as e:
            logger.warning(f"KB for '{tenant_slug}' unavailable, using empty KB: {e.message}")
            raw = []
        entries = normalize_kb(raw)
        self._cache[tenant_slug] = KBCacheEntry(tenant_slug, entries, fetched_at=now)
        track_cache_operation("kb", hit=False, size=len(self._cache))
        logger.debug(f"KB loaded for '{tenant_slug}': {len(entries)}/{len(raw)} entries kept")
        return entries

    def invalidate(self, tenant_slug: Optional[str] = None) -> None:
        """Drop one tenant's cached KB, or all of them."""
        if tenant_slug is None:
            self._cache.clear()
        else:
            self._cache.pop(tenant_slug, None)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": round(self.hits / total * 100, 2) if total else 0.0,
            "tenants_cached": sorted(self._cache),
            "ttl_seconds": self.ttl_seconds,
        }

    def __repr__(self) -> str:
        return f"KBStore(dir={self.clients_dir}, cached={len(self._cache)}, ttl={self.ttl_seconds}s)"
