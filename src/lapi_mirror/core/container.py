from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
import logging

from lapi_mirror.cache.service import DecisionCacheService
from lapi_mirror.cache.store import CacheStore
from lapi_mirror.core.config import get_settings
from lapi_mirror.sync.engine import CacheSyncEngine
from lapi_mirror.sync.scheduler import ALLOWED_REFRESH_INTERVALS_MS, RefreshScheduler
from lapi_mirror.sync.state import REFRESH_INTERVAL_META_KEY, SyncState
from lapi_mirror.upstream.client import UpstreamClient

logger = logging.getLogger(__name__)


@lru_cache
def get_cache_store() -> CacheStore:
    settings = get_settings()
    return CacheStore(settings.cache_db_path)


@lru_cache
def get_upstream_client() -> UpstreamClient:
    settings = get_settings()
    if not settings.has_credentials:
        logger.warning("LAPI_USER and LAPI_PASSWORD must be set for full functionality")
    return UpstreamClient(
        settings.lapi_url,
        settings.lapi_user,
        settings.lapi_password,
        timeout_seconds=settings.lapi_timeout_seconds,
        origins=settings.alert_origin_list,
        scopes=settings.alert_scope_list,
        page_limit=settings.lapi_page_limit,
        user_agent=settings.lapi_user_agent,
    )


def _initial_refresh_interval_ms(store: CacheStore, default_ms: int) -> int:
    raw = store.get_meta(REFRESH_INTERVAL_META_KEY)
    if raw is None:
        return default_ms
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignore persisted refresh interval %r", raw)
        return default_ms
    return value if value in ALLOWED_REFRESH_INTERVALS_MS else default_ms


@lru_cache
def get_sync_state() -> SyncState:
    settings = get_settings()
    return SyncState(
        refresh_interval_ms=_initial_refresh_interval_ms(get_cache_store(), settings.refresh_interval_ms),
        idle_threshold=timedelta(milliseconds=settings.idle_threshold_ms),
    )


@lru_cache
def get_sync_engine() -> CacheSyncEngine:
    settings = get_settings()
    return CacheSyncEngine(
        store=get_cache_store(),
        client=get_upstream_client(),
        state=get_sync_state(),
        lookback=settings.lookback,
        lookback_period=settings.lookback_period,
        chunk_size=timedelta(hours=settings.backfill_chunk_hours),
        chunk_pause_seconds=settings.backfill_chunk_pause_seconds,
        delta_buffer_seconds=settings.delta_safety_buffer_seconds,
        federated_origin=settings.federated_origin,
    )


@lru_cache
def get_refresh_scheduler() -> RefreshScheduler:
    settings = get_settings()
    return RefreshScheduler(
        engine=get_sync_engine(),
        state=get_sync_state(),
        store=get_cache_store(),
        idle_interval_ms=settings.idle_refresh_interval_ms,
        full_refresh_interval_ms=settings.full_refresh_interval_ms,
    )


@lru_cache
def get_cache_service() -> DecisionCacheService:
    return DecisionCacheService(
        store=get_cache_store(),
        engine=get_sync_engine(),
        scheduler=get_refresh_scheduler(),
        client=get_upstream_client(),
    )


def reset_container() -> None:
    """Drop every cached component; the next accessor call builds fresh ones."""
    for factory in (
        get_cache_service,
        get_refresh_scheduler,
        get_sync_engine,
        get_sync_state,
        get_upstream_client,
        get_cache_store,
        get_settings,
    ):
        factory.cache_clear()
