"""Append-only usage log (one JSON line per resolved request)."""

from __future__ import annotations

import json
import threading
from pathlib import Path

from loguru import logger

from kbchat.models import UsageRecord


class UsageRecorder:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, record: UsageRecord) -> None:
        """Append one record. Runs after the response is sent; failures are only logged."""
        line = json.dumps(record.to_json_dict(), ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock, self.path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as e:
            logger.warning(f"Usage record dropped ({self.path}): {e}")
