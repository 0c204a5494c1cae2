from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from lapi_mirror.core.config import Settings, get_settings
from lapi_mirror.core.container import get_refresh_scheduler, get_sync_state
from lapi_mirror.core.models import PublicConfig, RefreshIntervalUpdate
from lapi_mirror.sync.scheduler import ALLOWED_REFRESH_INTERVALS_MS, RefreshScheduler
from lapi_mirror.sync.state import SyncState

router = APIRouter(prefix="/api/config", tags=["config"])


def _public_config(settings: Settings, state: SyncState) -> PublicConfig:
    hours = settings.lookback_hours
    return PublicConfig(
        lookback_period=settings.lookback_period,
        lookback_hours=hours,
        lookback_days=max(1, round(hours / 24)),
        refresh_interval=state.refresh_interval_ms,
        allowed_refresh_intervals=list(ALLOWED_REFRESH_INTERVALS_MS),
    )


@router.get("", response_model=PublicConfig)
def public_config(
    settings: Settings = Depends(get_settings),
    state: SyncState = Depends(get_sync_state),
) -> PublicConfig:
    return _public_config(settings, state)


@router.put("/refresh-interval", response_model=PublicConfig)
async def set_refresh_interval(
    req: RefreshIntervalUpdate,
    settings: Settings = Depends(get_settings),
    state: SyncState = Depends(get_sync_state),
    scheduler: RefreshScheduler = Depends(get_refresh_scheduler),
) -> PublicConfig:
    try:
        await scheduler.set_refresh_interval_ms(req.refresh_interval_ms)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _public_config(settings, state)
