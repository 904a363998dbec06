from __future__ import annotations

"""
loguru sinks for the chat service and JSON event helpers.

Events are single-line JSON (answer_resolved, llm_call_completed,
error_occurred); any "error" field is passed through redact_secrets first.
"""

import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from loguru import logger
from kbchat.config import CONFIG, redact_secrets


_FORMAT = "{time:HH:mm:ss.SSS} | {level: <8} | {name}:{line} - {message}"


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink: stderr always, plus a file when configured."""
    level = (level or CONFIG.LOG_LEVEL).upper()
    log_file = log_file or CONFIG.LOG_FILE

    logger.remove()
    logger.add(sys.stderr, format=_FORMAT, level=level)
    if log_file:
        logger.add(log_file, format=_FORMAT, level=level, rotation="20 MB")

    logger.info(f"Logging configured: level={level} file={log_file or '-'}")


def log_structured(event_type: str, data: Dict[str, Any], level: str = "info") -> None:
    """
    Log structured data as JSON.

    Args:
        event_type: Type of event (e.g., 'answer_resolved', 'error_occurred')
        data: Dictionary of data to log
        level: Log level (debug, info, warning, error, critical)
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        **data,
    }

    if log_entry.get("error"):
        log_entry["error"] = redact_secrets(log_entry["error"])

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_entry, ensure_ascii=False))


def log_answer(client: str, kind: str, score: int, latency_ms: int, suggestions: int) -> None:
    """Log a resolved answer."""
    log_structured(
        "answer_resolved",
        {
            "client": client,
            "kind": kind,
            "top_score": score,
            "latency_ms": latency_ms,
            "suggestions": suggestions,
        },
    )


def log_llm_call(
    client: str,
    attempts: int,
    latency_ms: int,
    status: Optional[int] = None,
    model: Optional[str] = None,
) -> None:
    """Log a completion call."""
    log_structured(
        "llm_call_completed",
        {
            "client": client,
            "model": model,
            "attempts": attempts,
            "status": status,
            "latency_ms": latency_ms,
        },
    )


def log_error(error_type: str, message: str, request_id: Optional[str] = None, **kwargs: Any) -> None:
    """Log an error with context."""
    log_structured(
        "error_occurred",
        {
            "error_type": error_type,
            "error": message,
            "request_id": request_id,
            **kwargs,
        },
        level="error",
    )
