from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any, Callable

from lapi_mirror.cache.hydration import hydrate_decisions
from lapi_mirror.cache.store import CacheStore
from lapi_mirror.core.models import AlertRecord, DecisionCreateRequest, DecisionRecord, DecisionView
from lapi_mirror.core.timeutil import to_iso, utcnow
from lapi_mirror.sync.engine import CacheSyncEngine
from lapi_mirror.sync.normalizer import normalize_alert
from lapi_mirror.sync.scheduler import RefreshScheduler
from lapi_mirror.upstream.client import UpstreamClient
from lapi_mirror.upstream.exceptions import UpstreamHTTPError

logger = logging.getLogger(__name__)


class DecisionCacheService:
    """Read path and write-through operations served from the local mirror."""

    def __init__(
        self,
        store: CacheStore,
        engine: CacheSyncEngine,
        scheduler: RefreshScheduler,
        client: UpstreamClient,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.scheduler = scheduler
        self.client = client
        self.clock = clock

    async def _prepare_read(self) -> None:
        self.scheduler.record_activity()
        if not self.engine.state.is_initialized:
            await self.engine.initialize_cache()
        elif self.engine.state.refresh_interval_ms <= 0:
            # manual mode: every read pays for one delta round trip
            await self.engine.update_cache()

    def _window_start(self, since: datetime | None) -> str:
        return to_iso(since or (self.clock() - self.engine.lookback))

    async def query_alerts(self, since: datetime | None = None) -> list[AlertRecord]:
        await self._prepare_read()
        return await asyncio.to_thread(self.store.list_alerts, since=self._window_start(since))

    async def query_decisions(
        self,
        since: datetime | None = None,
        include_expired: bool = False,
    ) -> list[DecisionView]:
        await self._prepare_read()
        now = self.clock()
        if include_expired:
            records = await asyncio.to_thread(
                self.store.list_decisions_since, since=self._window_start(since), now=to_iso(now)
            )
        else:
            records = await asyncio.to_thread(self.store.list_active_decisions, now=to_iso(now))
        return hydrate_decisions(records, now, include_expired=include_expired)

    async def stats_alerts(self, since: datetime | None = None) -> list[AlertRecord]:
        await self._prepare_read()
        return await asyncio.to_thread(self.store.list_alerts, since=self._window_start(since))

    async def stats_decisions(self, since: datetime | None = None) -> list[DecisionRecord]:
        await self._prepare_read()
        return await asyncio.to_thread(
            self.store.list_decisions_since, since=self._window_start(since), now=to_iso(self.clock())
        )

    async def get_alert(self, alert_id: int) -> AlertRecord | None:
        await self._prepare_read()
        row = await asyncio.to_thread(self.store.get_alert, alert_id)
        if row is not None:
            return row
        # outside the mirrored window: ask the upstream directly
        try:
            payload = await self.client.get_alert(alert_id)
        except UpstreamHTTPError as exc:
            if exc.status == 404:
                return None
            raise
        if not isinstance(payload, dict):
            return None
        record, _ = normalize_alert(payload, now=self.clock(), federated_origin=self.engine.federated_origin)
        return record

    async def add_decision(self, req: DecisionCreateRequest) -> Any:
        result = await self.client.add_decision(req.ip, req.type, req.duration, req.reason)
        if self.engine.state.is_initialized:
            await self.engine.update_cache_delta()
        return result

    async def delete_decision(self, decision_id: str) -> Any:
        result = await self.client.delete_decision(decision_id)
        removed = await asyncio.to_thread(self.store.delete_decision, decision_id)
        logger.info("Deleted decision %s (%s mirrored rows)", decision_id, removed)
        return result

    async def delete_alert(self, alert_id: int) -> Any:
        result = await self.client.delete_alert(alert_id)
        alerts, decisions = await asyncio.to_thread(self.store.delete_alert, alert_id)
        logger.info("Deleted alert %s (%s alert rows, %s decision rows)", alert_id, alerts, decisions)
        return result
