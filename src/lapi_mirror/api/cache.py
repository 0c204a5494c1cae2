from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from lapi_mirror.cache.service import DecisionCacheService
from lapi_mirror.core.container import get_cache_service, get_refresh_scheduler, get_sync_engine
from lapi_mirror.core.models import (
    AlertRecord,
    CacheState,
    DecisionCreateRequest,
    DecisionRecord,
    DecisionView,
    SyncStatus,
)
from lapi_mirror.core.timeutil import parse_duration
from lapi_mirror.sync.engine import CacheSyncEngine
from lapi_mirror.sync.scheduler import RefreshScheduler
from lapi_mirror.upstream.exceptions import UpstreamError, UpstreamHTTPError

router = APIRouter(prefix="/api", tags=["cache"])


def _since(value: str | None, engine: CacheSyncEngine) -> datetime | None:
    if not value:
        return None
    parsed = parse_duration(value)
    if parsed is None or parsed.total_seconds() < 0:
        raise HTTPException(status_code=400, detail=f"invalid since duration: {value}")
    return engine.clock() - min(parsed, engine.lookback)


def _upstream_failure(exc: UpstreamError) -> HTTPException:
    if isinstance(exc, UpstreamHTTPError):
        return HTTPException(status_code=exc.status, detail=exc.body or str(exc))
    return HTTPException(status_code=502, detail=f"Bad Gateway: {exc}")


@router.get("/alerts", response_model=list[AlertRecord])
async def list_alerts(
    since: str | None = Query(default=None, description="Relative duration, e.g. 24h"),
    service: DecisionCacheService = Depends(get_cache_service),
    engine: CacheSyncEngine = Depends(get_sync_engine),
) -> list[AlertRecord]:
    return await service.query_alerts(_since(since, engine))


@router.get("/alerts/{alert_id}", response_model=AlertRecord)
async def get_alert(
    alert_id: int,
    service: DecisionCacheService = Depends(get_cache_service),
) -> AlertRecord:
    try:
        row = await service.get_alert(alert_id)
    except UpstreamError as exc:
        raise _upstream_failure(exc) from exc
    if row is None:
        raise HTTPException(status_code=404, detail=f"alert {alert_id} not found")
    return row


@router.delete("/alerts/{alert_id}")
async def delete_alert(
    alert_id: int,
    service: DecisionCacheService = Depends(get_cache_service),
) -> Any:
    try:
        result = await service.delete_alert(alert_id)
    except UpstreamError as exc:
        raise _upstream_failure(exc) from exc
    return result or {"message": "Deleted"}


@router.get("/decisions", response_model=list[DecisionView])
async def list_decisions(
    include_expired: bool = Query(default=False),
    since: str | None = Query(default=None),
    service: DecisionCacheService = Depends(get_cache_service),
    engine: CacheSyncEngine = Depends(get_sync_engine),
) -> list[DecisionView]:
    return await service.query_decisions(_since(since, engine), include_expired=include_expired)


@router.post("/decisions")
async def add_decision(
    req: DecisionCreateRequest,
    service: DecisionCacheService = Depends(get_cache_service),
) -> dict[str, Any]:
    if parse_duration(req.duration) is None:
        raise HTTPException(status_code=400, detail=f"invalid duration: {req.duration}")
    try:
        result = await service.add_decision(req)
    except UpstreamError as exc:
        raise _upstream_failure(exc) from exc
    return {"message": "Decision added (via Alert)", "result": result}


@router.delete("/decisions/{decision_id}")
async def delete_decision(
    decision_id: str,
    service: DecisionCacheService = Depends(get_cache_service),
) -> Any:
    try:
        result = await service.delete_decision(decision_id)
    except UpstreamError as exc:
        raise _upstream_failure(exc) from exc
    return result or {"message": "Deleted"}


@router.get("/stats/alerts", response_model=list[AlertRecord])
async def stats_alerts(
    since: str | None = Query(default=None),
    service: DecisionCacheService = Depends(get_cache_service),
    engine: CacheSyncEngine = Depends(get_sync_engine),
) -> list[AlertRecord]:
    return await service.stats_alerts(_since(since, engine))


@router.get("/stats/decisions", response_model=list[DecisionRecord])
async def stats_decisions(
    since: str | None = Query(default=None),
    service: DecisionCacheService = Depends(get_cache_service),
    engine: CacheSyncEngine = Depends(get_sync_engine),
) -> list[DecisionRecord]:
    return await service.stats_decisions(_since(since, engine))


@router.get("/sync/status", response_model=SyncStatus)
def sync_status(engine: CacheSyncEngine = Depends(get_sync_engine)) -> SyncStatus:
    return engine.get_sync_status()


@router.get("/cache/state", response_model=CacheState)
def cache_state(engine: CacheSyncEngine = Depends(get_sync_engine)) -> CacheState:
    return engine.get_cache_state()


@router.post("/cache/clear", response_model=CacheState)
async def clear_cache(
    engine: CacheSyncEngine = Depends(get_sync_engine),
    scheduler: RefreshScheduler = Depends(get_refresh_scheduler),
) -> CacheState:
    was_running = scheduler.is_running
    await scheduler.stop()
    try:
        await engine.clear_cache()
    finally:
        if was_running:
            scheduler.start()
    return engine.get_cache_state()
