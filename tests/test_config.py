"""Tests for the settings layer and the worker-facing RelayConfig snapshot."""
import json
from types import SimpleNamespace

import pytest

from haven_monitor.local.config import MergedSettings
from haven_monitor.local.relay_config import RelayConfig


def test_overrides_apply_only_to_modifiable_settings(tmp_path) -> None:
    path = tmp_path / "overrides.json"
    path.write_text(json.dumps({"RECORD_RETENTION": "250", "WORKER_NAME": "evil", "NOPE": 1}))

    settings = MergedSettings(path)

    assert settings.RECORD_RETENTION == 250
    assert settings.WORKER_NAME == "haven"
    assert not hasattr(settings, "NOPE")


def test_update_coerces_and_persists(tmp_path) -> None:
    path = tmp_path / "home" / "overrides.json"
    settings = MergedSettings(path)

    assert settings.update("NOTIFY_THROTTLE_SECONDS", "0.5") == 0.5
    assert settings.update("RELAY_PORT", "4000") == 4000

    saved = json.loads(path.read_text())
    assert saved["NOTIFY_THROTTLE_SECONDS"] == 0.5
    assert saved["RELAY_PORT"] == 4000
    assert MergedSettings(path).RELAY_PORT == 4000


def test_update_rejects_unknown_setting(tmp_path) -> None:
    settings = MergedSettings(tmp_path / "overrides.json")
    with pytest.raises(KeyError):
        settings.update("WORKER_NAME", "other")
    with pytest.raises(ValueError):
        settings.update("RECORD_RETENTION", "lots")


def test_broken_overrides_file_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "overrides.json"
    path.write_text("{not json")

    settings = MergedSettings(path)

    assert settings.RESORT_EVERY == 20


def test_relay_config_from_settings_copies_lists() -> None:
    seeds = ["wss://seed.example.com"]
    source = SimpleNamespace(
        OWNER_NPUB="npub1x", RELAY_URL="", RELAY_PORT=3355, DB_ENGINE="lmdb",
        BLOSSOM_PATH="blossom/", HAVEN_LOG_LEVEL="DEBUG", IMPORT_START_DATE="2024-01-01",
        IMPORT_SEED_RELAYS_FILE="relays_import.json", IMPORT_SEED_RELAYS=seeds,
        BLASTR_RELAYS_FILE="relays_blastr.json", BLASTR_RELAYS=[],
    )

    cfg = RelayConfig.from_settings(source)
    seeds.append("wss://later.example.com")

    assert cfg.db_engine == "lmdb"
    assert cfg.import_seed_relays == ["wss://seed.example.com"]


def test_effective_relay_url_falls_back_to_localhost() -> None:
    assert RelayConfig(relay_port=4000).effective_relay_url == "localhost:4000"
    assert RelayConfig(relay_url="127.0.0.1").effective_relay_url == "localhost:3355"
    assert RelayConfig(relay_url="relay.example.com").effective_relay_url == "relay.example.com"


def test_local_endpoints() -> None:
    assert RelayConfig(relay_port=3355).local_endpoints() == [
        "ws://localhost:3355/",
        "ws://localhost:3355/inbox",
        "ws://localhost:3355/chat",
        "ws://localhost:3355/private",
    ]
