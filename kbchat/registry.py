"""
Tenant registry: slug -> allowed origins, loaded from clients.json.

The registry file is provisioned externally. Loading fails soft (an
unreadable or corrupt file means "no tenant is authorized") and the
in-memory snapshot is only ever replaced whole, so request handlers never
observe a half-applied reload.
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from kbchat.errors import MalformedSourceError
from kbchat.models import Registry, TenantConfig

_SLUG_STRIP = re.compile(r"[^a-z0-9\-]")


def normalize_slug(raw: Any) -> str:
    """Lowercase and strip everything outside [a-z0-9-]. May return ''."""
    return _SLUG_STRIP.sub("", str(raw or "").lower())


def _read_registry_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise MalformedSourceError(f"Cannot read registry {path}: {e}", path=str(path), cause=e) from e
    if not isinstance(data, dict):
        raise MalformedSourceError(f"Registry {path} must be a JSON object", path=str(path))
    return data


def parse_registry(data: Dict[str, Any]) -> Registry:
    """Build a snapshot from the raw {slug: {name, origins}} mapping."""
    tenants: Dict[str, TenantConfig] = {}
    for raw_slug, cfg in data.items():
        slug = normalize_slug(raw_slug)
        if not slug or not isinstance(cfg, dict):
            logger.debug(f"Registry: skipping entry {raw_slug!r}")
            continue
        origins = cfg.get("origins") or []
        if not isinstance(origins, list):
            origins = []
        tenants[slug] = TenantConfig(
            slug=slug,
            name=str(cfg.get("name") or ""),
            allowed_origins=frozenset(o for o in origins if isinstance(o, str) and o),
        )
    return Registry(tenants)


def load_registry(path: Path) -> Registry:
    """Load the registry file. Never raises; failures yield an empty registry."""
    try:
        return parse_registry(_read_registry_json(path))
    except MalformedSourceError as e:
        logger.warning(f"Registry unavailable, no tenant authorized: {e.message}")
        return Registry()


class TenantRegistry:
    """Owns the current Registry snapshot and reloads it on file change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._snapshot: Registry = Registry()
        self._stamp: Optional[Tuple[int, int]] = None
        self._reload_lock = threading.Lock()

    @property
    def snapshot(self) -> Registry:
        return self._snapshot

    def get(self, slug: str) -> Optional[TenantConfig]:
        return self._snapshot.get(slug)

    def _file_stamp(self) -> Optional[Tuple[int, int]]:
        try:
            st = self.path.stat()
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def reload(self) -> Registry:
        """Load the file and swap the snapshot in one assignment."""
        with self._reload_lock:
            self._stamp = self._file_stamp()
            snapshot = load_registry(self.path)
            self._snapshot = snapshot
        logger.info(f"Registry loaded: {len(snapshot)} tenant(s) from {self.path}")
        return snapshot

    def refresh_if_changed(self) -> bool:
        """Reload when the file's mtime/size/existence changed. Returns True if reloaded."""
        if self._file_stamp() == self._stamp:
            return False
        self.reload()
        return True


class RegistryWatcher:
    """Daemon thread polling the registry file on a fixed interval."""

    def __init__(self, registry: TenantRegistry, interval_seconds: float = 1.5):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="registry-watcher", daemon=True)
        self._thread.start()
        logger.info(f"Registry watcher started (interval={self.interval_seconds}s)")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.registry.refresh_if_changed()
            except Exception as e:
                # load_registry is fail-soft; this only guards the thread itself
                logger.error(f"Registry watcher iteration failed: {e}")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds + 1)
            self._thread = None
