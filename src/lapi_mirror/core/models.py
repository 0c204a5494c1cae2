from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RefreshKind(str, Enum):
    FULL = "FULL"
    DELTA = "DELTA"


class AlertRecord(BaseModel):
    id: int | None = None
    uuid: str | None = None
    created_at: str
    scenario: str = "Unknown"
    source_ip: str = "Unknown"
    message: str = ""
    target: str = "Unknown"
    raw: dict[str, Any] = Field(default_factory=dict)


class DecisionRecord(BaseModel):
    id: str
    uuid: str | None = None
    alert_id: int | None = None
    created_at: str
    stop_at: str
    value: str = ""
    type: str = ""
    origin: str = ""
    scenario: str = "Unknown"
    raw: dict[str, Any] = Field(default_factory=dict)


class DecisionView(BaseModel):
    """A decision as served to readers, with countdown and duplicate flag computed at read time."""

    id: str
    alert_id: int | None = None
    created_at: str
    stop_at: str
    value: str
    type: str
    origin: str
    scenario: str
    duration: str
    expired: bool
    is_duplicate: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)


class SyncStatus(BaseModel):
    is_syncing: bool = False
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None


class LapiStatus(BaseModel):
    is_connected: bool = False
    last_check: datetime | None = None
    last_error: str | None = None


class CacheState(BaseModel):
    is_initialized: bool
    last_update: datetime | None = None
    last_full_refresh: datetime | None = None
    last_activity: datetime | None = None
    alert_count: int = 0
    decision_count: int = 0
    lookback_period: str
    refresh_interval_ms: int
    is_idle: bool
    lapi_status: LapiStatus


class RefreshIntervalUpdate(BaseModel):
    refresh_interval_ms: int = Field(..., ge=0)


class DecisionCreateRequest(BaseModel):
    ip: str = Field(..., min_length=1, description="IP or CIDR to act on")
    duration: str = Field(default="4h")
    reason: str = Field(default="manual")
    type: str = Field(default="ban")

    @field_validator("ip", "duration", "reason", "type")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class PublicConfig(BaseModel):
    lookback_period: str
    lookback_hours: int
    lookback_days: int
    refresh_interval: int
    allowed_refresh_intervals: list[int]
