#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults."""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

ROOT = Path(__file__).resolve().parents[1]


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name)
    return val if val is not None else (default or "")


def _parse_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_list(name: str) -> list[str]:
    return [s.strip() for s in _get_env(name, "").split(",") if s.strip()]


# Storage layout
BASE_DIR: Path = Path(_get_env("KBCHAT_ROOT", str(ROOT)))
CLIENTS_DIR: Path = Path(_get_env("CLIENTS_DIR", str(BASE_DIR / "clients")))
REGISTRY_FILE: Path = Path(_get_env("REGISTRY_FILE", str(CLIENTS_DIR / "clients.json")))
LOGS_DIR: Path = Path(_get_env("LOGS_DIR", str(BASE_DIR / "logs")))
USAGE_LOG_FILE: Path = Path(_get_env("USAGE_LOG_FILE", str(LOGS_DIR / "chat.jsonl")))
PUBLIC_DIR: Path = Path(_get_env("PUBLIC_DIR", str(BASE_DIR / "public")))

# Server
HOST: str = _get_env("API_HOST", "0.0.0.0")
PORT: int = _parse_int("PORT", 8787)

# Remote completion provider
LLM_BASE_URL: str = _get_env("LLM_BASE_URL", "https://api.openai.com/v1").strip()
LLM_CHAT_PATH: str = _get_env("LLM_CHAT_PATH", "/chat/completions").strip()
OPENAI_MODEL: str = _get_env("OPENAI_MODEL", "gpt-4o-mini").strip()
LLM_TIMEOUT_SECONDS: float = _parse_float("LLM_TIMEOUT_SECONDS", 15.0)
LLM_TEMPERATURE: float = _parse_float("LLM_TEMPERATURE", 0.2)

if LLM_TIMEOUT_SECONDS <= 0:
    raise RuntimeError("LLM_TIMEOUT_SECONDS must be positive.")
if not LLM_BASE_URL.startswith(("http://", "https://")):
    raise RuntimeError(f"LLM_BASE_URL must be http:// or https://, got: {LLM_BASE_URL}")

# Tenancy / answering
DEFAULT_CLIENT: str = _get_env("DEFAULT_CLIENT", "demo")
KB_CACHE_TTL_SECONDS: float = _parse_float("KB_CACHE_TTL_SECONDS", 60.0)
REGISTRY_POLL_SECONDS: float = _parse_float("REGISTRY_POLL_SECONDS", 1.5)
MAX_MESSAGE_CHARS: int = _parse_int("MAX_MESSAGE_CHARS", 2000)
KB_CONTEXT_CHAR_LIMIT: int = _parse_int("KB_CONTEXT_CHAR_LIMIT", 8000)

# Origins trusted for every tenant (setup convenience; empty by default)
CORS_FALLBACK_ORIGINS: list[str] = _parse_list("CORS_FALLBACK_ORIGINS")

# Origins the provisioning CLI adds to every new tenant
DEFAULT_TENANT_ORIGINS: list[str] = _parse_list("DEFAULT_TENANT_ORIGINS")


def get_api_key() -> str:
    """Provider credential, read per request so a missing key fails one request only."""
    return _get_env("OPENAI_API_KEY", "").strip()


_SECRET_PATTERNS = (
    re.compile(r"Bearer\s+[^\s\"']+", re.IGNORECASE),
    re.compile(r"sk-[A-Za-z0-9_\-]{8,}"),
)


def redact_secrets(text: str) -> str:
    """Mask bearer tokens and API keys in free text before it is logged."""
    out = str(text)
    out = _SECRET_PATTERNS[0].sub("Bearer ***", out)
    out = _SECRET_PATTERNS[1].sub("sk-***", out)
    return out


def health_summary() -> dict:
    """Return a non-sensitive config summary for /debug endpoints."""
    return {
        "clients_dir": str(CLIENTS_DIR),
        "registry_file": str(REGISTRY_FILE),
        "model": OPENAI_MODEL,
        "llm_timeout_seconds": LLM_TIMEOUT_SECONDS,
        "kb_cache_ttl_seconds": KB_CACHE_TTL_SECONDS,
        "api_key_configured": bool(get_api_key()),
    }


class _Settings:
    LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO").upper()
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None


CONFIG = _Settings()
