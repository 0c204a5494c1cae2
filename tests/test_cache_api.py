from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

from conftest import FrozenClock, make_alert, make_decision
from fastapi.testclient import TestClient

from lapi_mirror.cache.service import DecisionCacheService
from lapi_mirror.cache.store import CacheStore
from lapi_mirror.core.config import Settings, get_settings
from lapi_mirror.core.container import (
    get_cache_service,
    get_refresh_scheduler,
    get_sync_engine,
    get_sync_state,
)
from lapi_mirror.core.models import LapiStatus
from lapi_mirror.main import app
from lapi_mirror.sync.engine import CacheSyncEngine
from lapi_mirror.sync.scheduler import RefreshScheduler
from lapi_mirror.sync.state import REFRESH_INTERVAL_META_KEY, SyncState
from lapi_mirror.upstream.exceptions import UpstreamError, UpstreamHTTPError


class FakeUpstream:
    def __init__(self) -> None:
        self.active = [
            make_alert(
                1,
                decisions=[
                    make_decision(21, duration="1h0m0s"),
                    make_decision(20, duration="2h0m0s"),
                    make_decision(22, value="198.51.100.2", duration="30m0s"),
                ],
            )
        ]
        self.delete_error: UpstreamError | None = None
        self.added: list[str] = []
        self.lookup_error: UpstreamError = UpstreamHTTPError(404, "GET /v1/alerts", {"message": "object not found"})

    async def fetch_alerts(self, since=None, until=None, active_only=False) -> list[dict[str, Any]]:
        return list(self.active) if active_only else []

    def get_lapi_status(self) -> LapiStatus:
        return LapiStatus(is_connected=True)

    async def get_alert(self, alert_id: int) -> Any:
        raise self.lookup_error

    async def add_decision(self, value: str, decision_type: str, duration: str, reason: str) -> Any:
        self.added.append(value)
        return ["99"]

    async def delete_decision(self, decision_id: str) -> Any:
        if self.delete_error is not None:
            raise self.delete_error
        return {"nbDeleted": "1"}

    async def delete_alert(self, alert_id: int) -> Any:
        return {"nbDeleted": "1"}


def _setup_overrides(tmp_path: Path) -> tuple[CacheStore, FakeUpstream]:
    clock = FrozenClock()
    settings = Settings(lookback_period="24h", cache_db_path=str(tmp_path / "api.db"))
    store = CacheStore(settings.cache_db_path)
    upstream = FakeUpstream()
    state = SyncState(refresh_interval_ms=30_000)
    engine = CacheSyncEngine(
        store,
        upstream,
        state,
        lookback=settings.lookback,
        lookback_period=settings.lookback_period,
        chunk_size=timedelta(hours=12),
        chunk_pause_seconds=0,
        clock=clock,
    )
    scheduler = RefreshScheduler(engine, state, store, clock=clock)
    service = DecisionCacheService(store, engine, scheduler, upstream, clock=clock)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_sync_state] = lambda: state
    app.dependency_overrides[get_sync_engine] = lambda: engine
    app.dependency_overrides[get_refresh_scheduler] = lambda: scheduler
    app.dependency_overrides[get_cache_service] = lambda: service
    return store, upstream


def test_decisions_endpoint_serves_hydrated_rows(tmp_path: Path) -> None:
    _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        resp = client.get("/api/decisions")
        assert resp.status_code == 200
        body = {row["id"]: row for row in resp.json()}
        assert set(body) == {"20", "21", "22"}
        assert body["20"]["is_duplicate"] is False
        assert body["21"]["is_duplicate"] is True
        assert body["22"]["is_duplicate"] is False
        assert body["20"]["duration"] == "2h0m0s"
        assert body["22"]["expired"] is False

        state = client.get("/api/cache/state").json()
        assert state["is_initialized"] is True
        assert state["decision_count"] == 3
        assert state["is_idle"] is False
        assert client.get("/api/sync/status").json()["progress"] == 100
    finally:
        app.dependency_overrides.clear()


def test_invalid_since_is_rejected(tmp_path: Path) -> None:
    _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        assert client.get("/api/alerts", params={"since": "yesterday"}).status_code == 400
        resp = client.get("/api/alerts", params={"since": "6h"})
        assert resp.status_code == 200
        assert [row["id"] for row in resp.json()] == [1]
        assert resp.json()[0]["target"] == "ssh"
    finally:
        app.dependency_overrides.clear()


def test_add_decision_validates_duration(tmp_path: Path) -> None:
    _, upstream = _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        bad = client.post("/api/decisions", json={"ip": "198.51.100.4", "duration": "forever"})
        assert bad.status_code == 400
        assert upstream.added == []

        ok = client.post("/api/decisions", json={"ip": "198.51.100.4", "duration": "4h", "reason": "scan"})
        assert ok.status_code == 200
        assert ok.json()["result"] == ["99"]
        assert upstream.added == ["198.51.100.4"]
    finally:
        app.dependency_overrides.clear()


def test_delete_decision_maps_upstream_errors(tmp_path: Path) -> None:
    store, upstream = _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        client.get("/api/decisions")
        upstream.delete_error = UpstreamHTTPError(404, "DELETE /v1/decisions/20", {"message": "not found"})
        assert client.delete("/api/decisions/20").status_code == 404

        upstream.delete_error = UpstreamError("connection refused")
        assert client.delete("/api/decisions/20").status_code == 502
        assert store.get_decision("20") is not None

        upstream.delete_error = None
        assert client.delete("/api/decisions/20").status_code == 200
        assert store.get_decision("20") is None
    finally:
        app.dependency_overrides.clear()


def test_refresh_interval_endpoint(tmp_path: Path) -> None:
    store, _ = _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        config = client.get("/api/config").json()
        assert config["lookback_period"] == "24h"
        assert config["lookback_hours"] == 24
        assert config["lookback_days"] == 1
        assert config["refresh_interval"] == 30_000
        assert config["allowed_refresh_intervals"] == [0, 5_000, 30_000, 60_000, 300_000]

        bad = client.put("/api/config/refresh-interval", json={"refresh_interval_ms": 1234})
        assert bad.status_code == 400

        ok = client.put("/api/config/refresh-interval", json={"refresh_interval_ms": 0})
        assert ok.status_code == 200
        assert ok.json()["refresh_interval"] == 0
        assert store.get_meta(REFRESH_INTERVAL_META_KEY) == "0"
    finally:
        app.dependency_overrides.clear()


def test_health_endpoint(tmp_path: Path) -> None:
    _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["cache_initialized"] is False
        assert body["lapi_connected"] is True
    finally:
        app.dependency_overrides.clear()


def test_alert_detail_maps_missing_and_unreachable_upstream(tmp_path: Path) -> None:
    _, upstream = _setup_overrides(tmp_path)
    client = TestClient(app)
    try:
        assert client.get("/api/alerts/1").json()["id"] == 1
        assert client.get("/api/alerts/404").status_code == 404

        upstream.lookup_error = UpstreamError("connection refused")
        assert client.get("/api/alerts/404").status_code == 502
    finally:
        app.dependency_overrides.clear()
