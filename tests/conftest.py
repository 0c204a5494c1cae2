from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from lapi_mirror.cache.store import CacheStore

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_alert(
    alert_id: int,
    *,
    created_at: str = "2026-03-02T11:00:00Z",
    scenario: str = "crowdsecurity/ssh-bf",
    ip: str = "203.0.113.7",
    decisions: list[dict[str, Any]] | None = None,
    events: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "id": alert_id,
        "uuid": f"alert-{alert_id}",
        "created_at": created_at,
        "scenario": scenario,
        "message": f"Ip {ip} performed '{scenario}'",
        "machine_id": "host-1",
        "source": {"ip": ip, "scope": "Ip", "value": ip, "cn": "FR", "as_name": "Example AS"},
        "events": events or [],
        "decisions": decisions if decisions is not None else [],
    }


def make_decision(
    decision_id: int | str,
    *,
    value: str = "203.0.113.7",
    duration: str | None = "4h0m0s",
    origin: str = "crowdsec",
    decision_type: str = "ban",
    **extra: Any,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": decision_id,
        "value": value,
        "type": decision_type,
        "origin": origin,
        "scope": "Ip",
        "scenario": "crowdsecurity/ssh-bf",
    }
    if duration is not None:
        item["duration"] = duration
    item.update(extra)
    return item


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(str(tmp_path / "cache.db"))
