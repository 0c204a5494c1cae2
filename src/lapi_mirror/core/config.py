from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lapi_mirror.core.timeutil import duration_to_ms, parse_duration

DEFAULT_LOOKBACK = timedelta(hours=168)


class Settings(BaseSettings):
    app_name: str = Field(default="LAPI Mirror")
    env: str = Field(default="dev")
    log_level: str = Field(default="INFO")

    lapi_url: str = Field(default="http://crowdsec:8080")
    lapi_user: str | None = Field(default=None)
    lapi_password: str | None = Field(default=None)
    lapi_timeout_seconds: float = Field(default=30.0, gt=0)
    lapi_alert_origins: str = Field(default="cscli,crowdsec,cscli-import,manual,appsec")
    lapi_alert_scopes: str = Field(default="Ip,Range")
    lapi_page_limit: int = Field(default=10000, ge=1)
    lapi_user_agent: str = Field(default="lapi-mirror/0.3.0")

    lookback_period: str = Field(default="168h")
    refresh_interval: str = Field(
        default="manual",
        description="One of manual, 0, 5s, 30s, 1m, 5m",
    )
    idle_refresh_interval: str = Field(default="5m")
    idle_threshold: str = Field(default="2m")
    full_refresh_interval: str = Field(default="1h")
    scheduler_enabled: bool = Field(default=True)

    cache_db_path: str = Field(default="data/lapi_cache.db")
    backfill_chunk_hours: int = Field(default=6, ge=1, le=168)
    backfill_chunk_pause_seconds: float = Field(default=0.1, ge=0.0)
    delta_safety_buffer_seconds: int = Field(default=10, ge=0)
    federated_origin: str = Field(default="CAPI")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _strip_string_values(cls, data):
        if not isinstance(data, dict):
            return data
        normalized: dict[str, object] = {}
        for key, value in data.items():
            if isinstance(value, str):
                normalized[key] = value.strip()
            else:
                normalized[key] = value
        return normalized

    @property
    def lookback(self) -> timedelta:
        parsed = parse_duration(self.lookback_period)
        if parsed is None or parsed.total_seconds() <= 0:
            return DEFAULT_LOOKBACK
        return parsed

    @property
    def lookback_hours(self) -> int:
        return max(1, int(self.lookback.total_seconds() // 3600))

    @property
    def refresh_interval_ms(self) -> int:
        return duration_to_ms(self.refresh_interval, default_ms=0)

    @property
    def idle_refresh_interval_ms(self) -> int:
        return duration_to_ms(self.idle_refresh_interval, default_ms=300_000) or 300_000

    @property
    def idle_threshold_ms(self) -> int:
        return duration_to_ms(self.idle_threshold, default_ms=120_000) or 120_000

    @property
    def full_refresh_interval_ms(self) -> int:
        return duration_to_ms(self.full_refresh_interval, default_ms=3_600_000) or 3_600_000

    @property
    def alert_origin_list(self) -> list[str]:
        return [item.strip() for item in self.lapi_alert_origins.split(",") if item.strip()]

    @property
    def alert_scope_list(self) -> list[str]:
        return [item.strip() for item in self.lapi_alert_scopes.split(",") if item.strip()]

    @property
    def has_credentials(self) -> bool:
        return bool(self.lapi_user and self.lapi_password)


@lru_cache
def get_settings() -> Settings:
    return Settings()
