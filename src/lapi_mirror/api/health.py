from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from lapi_mirror.core.container import get_sync_engine
from lapi_mirror.sync.engine import CacheSyncEngine

router = APIRouter(tags=["health"])


@router.get("/health")
def health(engine: CacheSyncEngine = Depends(get_sync_engine)) -> dict[str, object]:
    lapi = engine.client.get_lapi_status()
    return {
        "status": "ok",
        "service": "lapi-mirror",
        "cache_initialized": engine.state.is_initialized,
        "syncing": engine.is_backfilling,
        "lapi_connected": lapi.is_connected,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }
