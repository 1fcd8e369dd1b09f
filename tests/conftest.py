from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from trackrecord.config import Settings


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys or key in {"HTTPX_LOG_LEVEL", "HTTPCORE_LOG_LEVEL"}:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_state_paths_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("TRACK_RECORD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("TRACK_RECORD_CACHE_DB", str(tmp_path / "cache.sqlite"))
    monkeypatch.setenv("TRACKRECORD_LOCK_DIR", str(tmp_path / "locks"))


@pytest.fixture
def fixed_clock():
    """Clock returning a settable UTC instant; starts at unix 1700000000."""

    class _Clock:
        def __init__(self) -> None:
            self.current = datetime.fromtimestamp(1_700_000_000, UTC)

        def __call__(self) -> datetime:
            return self.current

        def advance(self, seconds: int) -> None:
            self.current = datetime.fromtimestamp(self.current.timestamp() + seconds, UTC)

    return _Clock()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        base = {
            "TRACK_RECORD_URL": "https://tr.example.test/api/track-record",
            "TRACK_RECORD_API_KEY": "ea-key-0123456789",
            "TRACK_RECORD_INSTANCE_ID": "inst-1",
            "MAGIC_NUMBER": 4242,
            "SYMBOL": "EURUSD",
        }
        base.update(overrides)
        return Settings(**base)

    return _make
