"""Pytest configuration and fixtures for kbchat tests."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from kbchat.kb_store import KBStore
from kbchat.llm_client import CompletionClient
from kbchat.registry import TenantRegistry
from kbchat.access import AccessGuard
from kbchat.resolver import AnswerResolver


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "integration: end-to-end tests through the HTTP app"
    )


OPENING_HOURS_KB = [
    {"q": "Opening hours", "a": "Mon–Fri 09–17"},
    {"q": "Support email", "a": "support@acme.com"},
    {"title": "Delivery", "text": "We ship within 3 days"},
]

REGISTRY = {
    "acme": {"name": "Acme Shop", "origins": ["https://acme.example", "http://localhost:8888"]},
    "globex": {"name": "Globex", "origins": ["https://globex.example"]},
    "empty-co": {"name": "Empty Co", "origins": ["https://empty.example"]},
}


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture
def clients_dir(tmp_path):
    """clients/ tree with a registry and per-tenant KBs (empty-co has none)."""
    root = tmp_path / "clients"
    write_json(root / "clients.json", REGISTRY)
    write_json(root / "acme" / "kb.json", OPENING_HOURS_KB)
    write_json(root / "globex" / "kb.json", [{"q": "Globex hours", "a": "Always open"}])
    return root


@pytest.fixture
def registry(clients_dir):
    reg = TenantRegistry(clients_dir / "clients.json")
    reg.reload()
    return reg


@pytest.fixture
def kb_store(clients_dir):
    return KBStore(clients_dir, ttl_seconds=60)


def stream_response(text, status_code=200, chunks=None):
    """Fake streamed httpx response usable as ``with client.stream(...) as resp``."""
    resp = MagicMock(status_code=status_code)
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    resp.iter_bytes.return_value = chunks if chunks is not None else [text.encode("utf-8")]
    return resp


def completion_response(content="Model answer", status_code=200):
    """Fake httpx response in the OpenAI chat-completions shape."""
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return stream_response(json.dumps(body), status_code=status_code)


def error_response(status_code, body='{"error": {"message": "boom"}}'):
    return stream_response(body, status_code=status_code)


@pytest.fixture
def completion_client():
    return CompletionClient(
        base_url="https://llm.test/v1",
        model="test-model",
        timeout_seconds=15,
        api_key_provider=lambda: "sk-test-key-123456",
    )


@pytest.fixture
def resolver(registry, kb_store, completion_client):
    return AnswerResolver(
        registry=registry,
        kb_store=kb_store,
        completion_client=completion_client,
        guard=AccessGuard(registry),
    )
