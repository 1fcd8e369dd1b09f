from __future__ import annotations

from pathlib import Path

from trackrecord.config import Settings

ENV_EXAMPLE = Path(__file__).resolve().parents[1] / ".env.example"

EXPECTED_KEYS = {
    "TRACK_RECORD_URL",
    "TRACK_RECORD_API_KEY",
    "TRACK_RECORD_INSTANCE_ID",
    "MAGIC_NUMBER",
    "SYMBOL",
    "TIMEFRAME",
    "ENGINE_VERSION",
    "TRACK_RECORD_STATE_DIR",
    "TRACK_RECORD_CACHE_DB",
    "SNAPSHOT_INTERVAL_SECONDS",
    "HTTP_TIMEOUT_SECONDS",
    "LOTS_TOLERANCE",
    "CLOSE_LOOKUP_MAX_ATTEMPTS",
    "TESTER_MODE",
    "LOG_LEVEL",
}


def _env_lines() -> list[str]:
    env_example = ENV_EXAMPLE.read_text(encoding="utf-8")
    return [
        line.strip()
        for line in env_example.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def test_env_example_is_multiline_and_key_value() -> None:
    lines = _env_lines()

    assert len(lines) > 1
    assert all("=" in line for line in lines)
    keys = {line.split("=", 1)[0] for line in lines}
    assert EXPECTED_KEYS.issubset(keys)


def test_env_example_covers_every_setting() -> None:
    keys = {line.split("=", 1)[0] for line in _env_lines()}
    aliases = {field.alias for field in Settings.model_fields.values() if field.alias}

    assert aliases == keys


def test_env_example_values_load_into_settings(monkeypatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env.live"
    env_file.write_text(ENV_EXAMPLE.read_text(encoding="utf-8"), encoding="utf-8")

    monkeypatch.chdir(tmp_path)
    for key in EXPECTED_KEYS:
        monkeypatch.delenv(key, raising=False)

    settings = Settings(_env_file=str(env_file))

    assert settings.track_record_url == "https://localhost/api/track-record"
    assert settings.api_key_value() == "replace-with-instance-key"
    assert settings.instance_id == "replace-with-instance-id"
    assert settings.magic_number == 0
    assert settings.symbol == "EURUSD"
    assert settings.timeframe == "H1"
    assert settings.engine_version == "1.0"
    assert settings.state_dir == ".trackrecord"
    assert settings.cache_db_path == "trackrecord_cache.db"
    assert settings.snapshot_interval_seconds == 300
    assert settings.http_timeout_seconds == 5.0
    assert settings.lots_tolerance == 0.001
    assert settings.tester_mode is False
    assert settings.log_level == "INFO"
    assert settings.is_enabled() is True
