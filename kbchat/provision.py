#!/usr/bin/env python3
"""Provision a new tenant: starter kb.json plus a registry entry.

Usage:
    kbchat-new-client <slug> <https://client-domain>

The running server picks the registry change up on its next poll.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List

from loguru import logger

from kbchat import config as CFG
from kbchat.registry import normalize_slug


def starter_kb(slug: str) -> List[Dict[str, str]]:
    return [
        {"q": "Opening hours", "a": "We’re open Mon–Fri 09–17."},
        {"q": "Support email", "a": f"support@{slug}.com"},
    ]


def _dedupe(items: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


def provision_client(
    slug_raw: str,
    origin: str,
    clients_dir: Path = CFG.CLIENTS_DIR,
    registry_file: Path = CFG.REGISTRY_FILE,
    default_origins: Iterable[str] = CFG.DEFAULT_TENANT_ORIGINS,
) -> Dict[str, Any]:
    """Create clients/<slug>/kb.json if missing and upsert the registry entry."""
    slug = normalize_slug(slug_raw)
    if not slug or not origin:
        raise ValueError("slug and origin are required")

    kb_path = Path(clients_dir) / slug / "kb.json"
    kb_path.parent.mkdir(parents=True, exist_ok=True)
    if not kb_path.exists():
        kb_path.write_text(json.dumps(starter_kb(slug), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info(f"Created starter KB at {kb_path}")

    registry_file = Path(registry_file)
    try:
        registry = json.loads(registry_file.read_text(encoding="utf-8"))
        if not isinstance(registry, dict):
            registry = {}
    except (OSError, ValueError):
        registry = {}

    origins = _dedupe([origin, *default_origins])
    registry[slug] = {"name": slug, "origins": origins}
    registry_file.parent.mkdir(parents=True, exist_ok=True)
    # Write-then-rename so the server's poller never reads a half-written file
    tmp = registry_file.with_suffix(registry_file.suffix + ".tmp")
    tmp.write_text(json.dumps(registry, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(registry_file)

    return {"slug": slug, "kb_path": str(kb_path), "origins": origins}


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Provision a kbchat tenant")
    parser.add_argument("slug", help="Tenant slug (normalized to [a-z0-9-])")
    parser.add_argument("origin", help="Browser origin allowed to call the API, e.g. https://www.acme.com")
    parser.add_argument("--clients-dir", type=Path, default=CFG.CLIENTS_DIR)
    parser.add_argument("--registry-file", type=Path, default=None)
    args = parser.parse_args(argv)

    registry_file = args.registry_file or Path(args.clients_dir) / "clients.json"
    try:
        result = provision_client(args.slug, args.origin, args.clients_dir, registry_file)
    except ValueError as e:
        parser.print_usage(sys.stderr)
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(f"✅ Created client '{result['slug']}'")
    print(f" - KB: {result['kb_path']}")
    print(f" - Origins: {', '.join(result['origins'])}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
