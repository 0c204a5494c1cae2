from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from lapi_mirror.core.models import SyncStatus

REFRESH_INTERVAL_META_KEY = "refresh_interval_ms"


@dataclass
class SyncState:
    """Process-wide sync and scheduler bookkeeping, owned by the container."""

    refresh_interval_ms: int = 0
    is_initialized: bool = False
    last_update: datetime | None = None
    last_full_refresh: datetime | None = None
    last_activity: datetime | None = None
    idle_threshold: timedelta = timedelta(minutes=2)
    _status: SyncStatus = field(default_factory=SyncStatus)

    def begin_sync(self, message: str, now: datetime) -> None:
        self._status = SyncStatus(is_syncing=True, progress=0, message=message, started_at=now)

    def update_progress(self, progress: int, message: str) -> None:
        self._status.progress = max(0, min(100, int(progress)))
        self._status.message = message

    def finish_sync(self, message: str, now: datetime) -> None:
        self._status.is_syncing = False
        self._status.progress = 100
        self._status.message = message
        self._status.completed_at = now
        self._status.last_error = None

    def fail_sync(self, reason: str, now: datetime) -> None:
        self._status.is_syncing = False
        self._status.message = f"Sync failed: {reason}"
        self._status.completed_at = now
        self._status.last_error = reason

    def status(self) -> SyncStatus:
        return self._status.model_copy()

    def mark_updated(self, now: datetime, *, full: bool = False) -> None:
        self.last_update = now
        if full:
            self.last_full_refresh = now
            self.is_initialized = True

    def reset(self) -> None:
        self.is_initialized = False
        self.last_update = None
        self.last_full_refresh = None
        self._status = SyncStatus()

    def record_activity(self, now: datetime) -> None:
        self.last_activity = now

    def idle_for(self, now: datetime) -> timedelta | None:
        if self.last_activity is None:
            return None
        return now - self.last_activity

    def is_idle(self, now: datetime) -> bool:
        idle = self.idle_for(now)
        return idle is None or idle > self.idle_threshold
