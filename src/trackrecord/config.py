from __future__ import annotations

from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    track_record_url: str = Field(
        default="https://localhost/api/track-record", alias="TRACK_RECORD_URL"
    )
    track_record_api_key: SecretStr | None = Field(default=None, alias="TRACK_RECORD_API_KEY")
    instance_id: str = Field(default="", alias="TRACK_RECORD_INSTANCE_ID")

    magic_number: int = Field(default=0, alias="MAGIC_NUMBER")
    symbol: str = Field(default="", alias="SYMBOL")
    timeframe: str = Field(default="H1", alias="TIMEFRAME")
    engine_version: str = Field(default="1.0", alias="ENGINE_VERSION")

    state_dir: str = Field(default=".trackrecord", alias="TRACK_RECORD_STATE_DIR")
    cache_db_path: str = Field(default="trackrecord_cache.db", alias="TRACK_RECORD_CACHE_DB")

    snapshot_interval_seconds: int = Field(default=300, alias="SNAPSHOT_INTERVAL_SECONDS")
    http_timeout_seconds: float = Field(default=5.0, alias="HTTP_TIMEOUT_SECONDS")
    lots_tolerance: float = Field(default=0.001, alias="LOTS_TOLERANCE")
    close_lookup_max_attempts: int = Field(default=20, alias="CLOSE_LOOKUP_MAX_ATTEMPTS")
    tester_mode: bool = Field(default=False, alias="TESTER_MODE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("track_record_url")
    def validate_track_record_url(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("TRACK_RECORD_URL must start with http:// or https://")
        return cleaned

    @field_validator("instance_id", "symbol")
    def strip_text(cls, value: str) -> str:
        return value.strip()

    @field_validator("magic_number")
    def validate_magic_number(cls, value: int) -> int:
        if value < 0:
            raise ValueError("MAGIC_NUMBER must be >= 0")
        return value

    @field_validator("snapshot_interval_seconds")
    def validate_snapshot_interval_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("SNAPSHOT_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("http_timeout_seconds")
    def validate_http_timeout_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("lots_tolerance")
    def validate_lots_tolerance(cls, value: float) -> float:
        if value < 0:
            raise ValueError("LOTS_TOLERANCE must be >= 0")
        return value

    @field_validator("close_lookup_max_attempts")
    def validate_close_lookup_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CLOSE_LOOKUP_MAX_ATTEMPTS must be >= 1")
        return value

    def api_key_value(self) -> str:
        if self.track_record_api_key is None:
            return ""
        return self.track_record_api_key.get_secret_value().strip()

    def is_enabled(self) -> bool:
        return bool(self.api_key_value()) and not self.tester_mode

    def cache_key(self) -> str:
        return f"TR_SEQ_{self.magic_number}"

    def primary_state_path(self) -> Path:
        return Path(self.state_dir).expanduser() / f"track_record_{self.magic_number}.json"
