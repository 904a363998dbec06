"""Test tenant provisioning CLI."""

import json

import pytest

from kbchat.kb_store import KBStore
from kbchat.provision import main, provision_client
from kbchat.registry import load_registry


def test_creates_kb_and_registry_entry(tmp_path):
    clients = tmp_path / "clients"
    result = provision_client(
        "Acme_Shop", "https://www.acme.com",
        clients_dir=clients,
        registry_file=clients / "clients.json",
        default_origins=["https://widget.example", "https://www.acme.com"],
    )

    assert result["slug"] == "acmeshop"
    assert result["origins"] == ["https://www.acme.com", "https://widget.example"]

    registry = load_registry(clients / "clients.json")
    assert registry["acmeshop"].allowed_origins == frozenset(result["origins"])
    assert registry["acmeshop"].name == "acmeshop"

    kb = KBStore(clients).get("acmeshop")
    assert [e.question for e in kb] == ["Opening hours", "Support email"]
    assert kb[1].answer == "support@acmeshop.com"


def test_keeps_existing_kb_and_other_tenants(tmp_path):
    clients = tmp_path / "clients"
    (clients / "acme").mkdir(parents=True)
    (clients / "acme" / "kb.json").write_text(json.dumps([{"q": "Mine", "a": "kept"}]), encoding="utf-8")
    (clients / "clients.json").write_text(
        json.dumps({"other": {"name": "Other", "origins": ["https://other.example"]}}), encoding="utf-8"
    )

    provision_client("acme", "https://acme.example", clients, clients / "clients.json", default_origins=[])

    data = json.loads((clients / "clients.json").read_text(encoding="utf-8"))
    assert set(data) == {"other", "acme"}
    assert data["acme"] == {"name": "acme", "origins": ["https://acme.example"]}
    assert json.loads((clients / "acme" / "kb.json").read_text(encoding="utf-8")) == [{"q": "Mine", "a": "kept"}]


def test_corrupt_registry_is_replaced(tmp_path):
    clients = tmp_path / "clients"
    clients.mkdir()
    (clients / "clients.json").write_text("{broken", encoding="utf-8")

    provision_client("acme", "https://acme.example", clients, clients / "clients.json", default_origins=[])
    assert set(load_registry(clients / "clients.json")) == {"acme"}


@pytest.mark.parametrize("slug,origin", [("!!!", "https://x.example"), ("acme", "")])
def test_rejects_missing_arguments(tmp_path, slug, origin):
    with pytest.raises(ValueError):
        provision_client(slug, origin, tmp_path, tmp_path / "clients.json", default_origins=[])


def test_cli_main(tmp_path, capsys):
    clients = tmp_path / "clients"
    code = main(["demo", "https://demo.example", "--clients-dir", str(clients)])
    assert code == 0
    assert "Created client 'demo'" in capsys.readouterr().out
    assert "demo" in load_registry(clients / "clients.json")


def test_cli_main_bad_slug(tmp_path):
    assert main(["???", "https://demo.example", "--clients-dir", str(tmp_path)]) == 1
