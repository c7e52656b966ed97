from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from outpost.config.settings import OutpostSettings, get_settings, reload_settings
from outpost.retry import RetryPolicy
from outpost.state import StateStore
from outpost.values import UNKNOWN


def test_state_round_trip_keeps_unknown(tmp_path):
    store = StateStore(tmp_path / "state")
    path = store.save("remote_exec", "abc123", {"sum": UNKNOWN, "stdout": "hi\n", "inline": ["echo hi"]})

    assert path == tmp_path / "state" / "remote_exec" / "abc123.json"
    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert document["id"] == "abc123"

    loaded = store.load("remote_exec", "abc123")
    assert loaded["sum"] is UNKNOWN
    assert loaded["inline"] == ["echo hi"]
    assert store.list("remote_exec") == ["abc123"]
    assert not list(path.parent.glob("*.tmp"))


def test_state_missing_and_corrupt(tmp_path):
    store = StateStore(tmp_path)
    assert store.load("file", "static") is None

    path = store.path("file", "static")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    assert store.load("file", "static") is None

    assert store.delete("file", "static")
    assert not store.delete("file", "static")


def test_state_tokens_are_sanitised(tmp_path):
    store = StateStore(tmp_path)
    assert store.path("service start", "../etc/passwd").parent.parent == tmp_path.resolve()


def test_state_root_from_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("OUTPOST_STATE_DIR", str(tmp_path / "env-state"))
    settings = reload_settings()
    try:
        assert StateStore().root == (tmp_path / "env-state").resolve()
        assert StateStore.from_settings(OutpostSettings(state_dir=tmp_path / "other")).root == (
            tmp_path / "other"
        ).resolve()
        assert StateStore(settings=settings).root == settings.state_dir
    finally:
        get_settings.cache_clear()


def test_settings_defaults():
    settings = OutpostSettings()
    assert settings.state_dir == Path("state").resolve()
    assert settings.remote_tmp_dir == "/tmp"
    assert settings.retry_max_attempts == 3
    assert settings.client_options() == {"connect_timeout": 10.0, "default_port": 22}


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("OUTPOST_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("OUTPOST_SSH_PORT", "2222")
    monkeypatch.setenv("OUTPOST_PROVIDER_CONFIG", str(tmp_path / "provider.json"))

    settings = reload_settings()
    assert settings.retry_max_attempts == 5
    assert settings.ssh_port == 2222
    assert settings.provider_config == (tmp_path / "provider.json").resolve()
    assert get_settings() is settings

    policy = RetryPolicy.from_settings(settings)
    assert policy.max_attempts == 5
    assert policy.max_delay == 30.0
    get_settings.cache_clear()


def test_settings_from_dotenv(tmp_path):
    (tmp_path / ".env").write_text("OUTPOST_STATUS_TIMEOUT=15\nOUTPOST_LOG_LEVEL=DEBUG\n", encoding="utf-8")
    settings = OutpostSettings()
    assert settings.status_timeout == 15.0
    assert settings.log_level == "DEBUG"


def test_settings_validation():
    with pytest.raises(ValidationError):
        OutpostSettings(retry_max_attempts=0)
    with pytest.raises(ValidationError):
        OutpostSettings(ssh_port=70000)
