from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest
from conftest import T0, FrozenClock, make_alert, make_decision

from lapi_mirror.cache.service import DecisionCacheService
from lapi_mirror.cache.store import CacheStore
from lapi_mirror.core.models import DecisionCreateRequest, LapiStatus
from lapi_mirror.sync.engine import CacheSyncEngine
from lapi_mirror.sync.scheduler import RefreshScheduler
from lapi_mirror.sync.state import SyncState
from lapi_mirror.upstream.exceptions import UpstreamHTTPError


class FakeUpstream:
    def __init__(self) -> None:
        self.active: list[dict[str, Any]] = []
        self.recent: list[dict[str, Any]] = []
        self.fetches = 0
        self.added: list[tuple[str, str, str, str]] = []
        self.deleted: list[str] = []
        self.fail_delete = False
        self.remote: dict[int, dict[str, Any]] = {}
        self.lookups: list[int] = []

    async def fetch_alerts(self, since=None, until=None, active_only=False) -> list[dict[str, Any]]:
        self.fetches += 1
        return list(self.active if active_only else self.recent)

    def get_lapi_status(self) -> LapiStatus:
        return LapiStatus(is_connected=True)

    async def add_decision(self, value: str, decision_type: str, duration: str, reason: str) -> Any:
        self.added.append((value, decision_type, duration, reason))
        self.recent = [make_alert(77, ip=value, decisions=[make_decision(700, value=value, duration=duration)])]
        return ["77"]

    async def get_alert(self, alert_id: int) -> Any:
        self.lookups.append(alert_id)
        if alert_id not in self.remote:
            raise UpstreamHTTPError(404, f"GET /v1/alerts/{alert_id}", {"message": "object not found"})
        return self.remote[alert_id]

    async def delete_decision(self, decision_id: str) -> Any:
        if self.fail_delete:
            raise UpstreamHTTPError(404, "DELETE", {"message": "not found"})
        self.deleted.append(decision_id)
        return {"nbDeleted": "1"}

    async def delete_alert(self, alert_id: int) -> Any:
        self.deleted.append(f"alert:{alert_id}")
        return {"nbDeleted": "1"}


def _service(store: CacheStore, clock: FrozenClock, upstream: FakeUpstream, *, interval_ms: int = 0):
    state = SyncState(refresh_interval_ms=interval_ms)
    engine = CacheSyncEngine(
        store,
        upstream,
        state,
        lookback=timedelta(hours=12),
        chunk_size=timedelta(hours=6),
        chunk_pause_seconds=0,
        clock=clock,
    )
    scheduler = RefreshScheduler(engine, state, store, clock=clock)
    return DecisionCacheService(store, engine, scheduler, upstream, clock=clock)


def test_first_read_waits_for_backfill(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    upstream.active = [
        make_alert(1, decisions=[make_decision(5, duration="2h"), make_decision(3, duration="1h")]),
    ]
    service = _service(store, clock, upstream, interval_ms=30_000)

    views = asyncio.run(service.query_decisions())

    assert service.engine.state.is_initialized is True
    assert {v.id: (v.duration, v.is_duplicate) for v in views} == {
        "5": ("2h0m0s", True),
        "3": ("1h0m0s", False),
    }
    assert service.engine.state.last_activity == T0
    # window of 12h with 6h chunks plus the active pass
    assert upstream.fetches == 3


def test_manual_mode_refreshes_on_every_read(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    service = _service(store, clock, upstream, interval_ms=0)

    asyncio.run(service.query_alerts())
    assert upstream.fetches == 3

    upstream.recent = [make_alert(9, created_at="2026-03-02T12:00:30Z")]
    clock.advance(minutes=1)
    alerts = asyncio.run(service.query_alerts())

    assert upstream.fetches == 5
    assert [a.id for a in alerts] == [9]


def test_reads_hide_expired_unless_asked(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    upstream.active = [make_alert(1, decisions=[make_decision(1, duration="30m")])]
    service = _service(store, clock, upstream, interval_ms=30_000)
    asyncio.run(service.query_decisions())
    clock.advance(hours=1)

    assert asyncio.run(service.query_decisions()) == []
    expired = asyncio.run(service.query_decisions(include_expired=True))
    assert [(v.id, v.expired, v.duration) for v in expired] == [("1", True, "0s")]


def test_add_decision_pulls_it_into_the_mirror(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    service = _service(store, clock, upstream, interval_ms=30_000)
    asyncio.run(service.engine.initialize_cache())

    result = asyncio.run(service.add_decision(DecisionCreateRequest(ip=" 198.51.100.4 ", duration="4h")))

    assert result == ["77"]
    assert upstream.added == [("198.51.100.4", "ban", "4h", "manual")]
    assert store.get_decision("700") is not None


def test_delete_decision_removes_mirrored_row(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    upstream.active = [make_alert(1, decisions=[make_decision(11), make_decision(12, value="198.51.100.8")])]
    service = _service(store, clock, upstream, interval_ms=30_000)
    asyncio.run(service.engine.initialize_cache())

    asyncio.run(service.delete_decision("11"))
    assert store.get_decision("11") is None
    assert store.get_decision("12") is not None

    asyncio.run(service.delete_alert(1))
    assert store.counts() == (0, 0)
    assert upstream.deleted == ["11", "alert:1"]


def test_failed_upstream_delete_keeps_mirror(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    upstream.active = [make_alert(1, decisions=[make_decision(11)])]
    service = _service(store, clock, upstream, interval_ms=30_000)
    asyncio.run(service.engine.initialize_cache())
    upstream.fail_delete = True

    with pytest.raises(UpstreamHTTPError):
        asyncio.run(service.delete_decision("11"))
    assert store.get_decision("11") is not None


def test_stats_read_on_cold_cache_runs_backfill(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    upstream.active = [make_alert(1, decisions=[make_decision(4, duration="1h")])]
    service = _service(store, clock, upstream, interval_ms=30_000)

    decisions = asyncio.run(service.stats_decisions())

    assert service.engine.state.is_initialized is True
    assert service.engine.state.last_activity == T0
    assert upstream.fetches == 3
    assert [d.id for d in decisions] == ["4"]


def test_stats_reads_in_manual_mode_pull_a_delta(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    service = _service(store, clock, upstream, interval_ms=0)
    asyncio.run(service.stats_alerts())
    assert upstream.fetches == 3

    upstream.recent = [make_alert(8, created_at="2026-03-02T12:00:20Z")]
    clock.advance(seconds=30)
    alerts = asyncio.run(service.stats_alerts())
    assert upstream.fetches == 5
    assert [a.id for a in alerts] == [8]

    asyncio.run(service.stats_decisions())
    assert upstream.fetches == 7


def test_alert_detail_falls_back_to_upstream(store: CacheStore, clock: FrozenClock) -> None:
    upstream = FakeUpstream()
    upstream.active = [make_alert(1, decisions=[make_decision(11)])]
    upstream.remote[42] = make_alert(42, created_at="2026-01-15T08:00:00Z", scenario="crowdsecurity/http-crawl-non_statics")
    service = _service(store, clock, upstream, interval_ms=30_000)
    asyncio.run(service.engine.initialize_cache())

    mirrored = asyncio.run(service.get_alert(1))
    assert mirrored is not None and mirrored.id == 1
    assert upstream.lookups == []

    remote = asyncio.run(service.get_alert(42))
    assert remote is not None
    assert remote.created_at == "2026-01-15T08:00:00.000000Z"
    assert remote.target == "http"
    assert store.get_alert(42) is None

    assert asyncio.run(service.get_alert(43)) is None
    assert upstream.lookups == [42, 43]
