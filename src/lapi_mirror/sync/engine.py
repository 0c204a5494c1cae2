from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Protocol

from lapi_mirror.cache.store import CacheStore
from lapi_mirror.core.models import CacheState, LapiStatus, SyncStatus
from lapi_mirror.core.timeutil import format_duration, to_iso, utcnow
from lapi_mirror.sync.normalizer import normalize_alerts
from lapi_mirror.sync.state import SyncState

logger = logging.getLogger(__name__)

# durations handed to the upstream are floored to whole seconds
_SINCE_OVERLAP = timedelta(seconds=1)


class AlertSource(Protocol):
    async def fetch_alerts(
        self, since: str | None = None, until: str | None = None, active_only: bool = False
    ) -> list[dict[str, Any]]: ...

    def get_lapi_status(self) -> LapiStatus: ...


class BackfillError(RuntimeError):
    """Every chunk and the active-decision pass failed."""


def iter_chunks(start: datetime, end: datetime, size: timedelta) -> list[tuple[datetime, datetime]]:
    chunks: list[tuple[datetime, datetime]] = []
    cursor = start
    while cursor < end:
        chunk_end = min(cursor + size, end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end
    return chunks


class CacheSyncEngine:
    """
    Keeps the local store in step with the upstream.

    A cold cache is filled by a chunked backfill over the lookback window; after
    that, delta updates upsert newly created alerts and only refresh the expiry
    of decisions the upstream still reports as active.
    """

    def __init__(
        self,
        store: CacheStore,
        client: AlertSource,
        state: SyncState,
        *,
        lookback: timedelta,
        lookback_period: str = "168h",
        chunk_size: timedelta = timedelta(hours=6),
        chunk_pause_seconds: float = 0.1,
        delta_buffer_seconds: int = 10,
        federated_origin: str = "CAPI",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.client = client
        self.state = state
        self.lookback = lookback
        self.lookback_period = lookback_period
        self.chunk_size = chunk_size
        self.chunk_pause_seconds = max(0.0, chunk_pause_seconds)
        self.delta_buffer_seconds = max(0, delta_buffer_seconds)
        self.federated_origin = federated_origin
        self.clock = clock
        self._backfill_task: asyncio.Task[bool] | None = None

    @property
    def is_backfilling(self) -> bool:
        return self._backfill_task is not None and not self._backfill_task.done()

    async def initialize_cache(self) -> bool:
        if self.state.is_initialized:
            return True
        return await self._coalesced_backfill()

    async def refresh_full(self) -> bool:
        ok = await self._coalesced_backfill()
        if ok:
            await self.cleanup_old_data()
        return ok

    async def _coalesced_backfill(self) -> bool:
        # no await between the check and the assignment, so callers cannot race here
        task = self._backfill_task
        if task is None or task.done():
            task = asyncio.create_task(self._run_backfill(), name="lapi-mirror-backfill")
            self._backfill_task = task
        return await asyncio.shield(task)

    async def _run_backfill(self) -> bool:
        try:
            now = self.clock()
            await self.backfill(now - self.lookback, now)
            return True
        except BackfillError as exc:
            logger.error("Historical sync failed: %s", exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.exception("Historical sync aborted")
            self.state.fail_sync(str(exc), self.clock())
            return False
        finally:
            self._backfill_task = None

    async def backfill(self, start: datetime, now: datetime) -> int:
        """Import ``[start, now)`` oldest chunk first, then every alert holding an active decision."""
        chunks = iter_chunks(start, now, self.chunk_size)
        span = max((now - start).total_seconds(), 1.0)
        self.state.begin_sync("Starting historical sync", self.clock())
        logger.info("Historical sync started: %s chunks of %s", len(chunks), self.chunk_size)

        total = 0
        failed = 0
        last_error = ""
        for idx, (chunk_start, chunk_end) in enumerate(chunks, start=1):
            ref = self.clock()
            since = format_duration(ref - chunk_start + _SINCE_OVERLAP)
            until = format_duration(ref - chunk_end) if chunk_end < now else None
            try:
                alerts = await self.client.fetch_alerts(since=since, until=until, active_only=False)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                last_error = str(exc)
                logger.warning(
                    "Skip chunk %s/%s (%s - %s): %s",
                    idx,
                    len(chunks),
                    to_iso(chunk_start),
                    to_iso(chunk_end),
                    exc,
                )
            else:
                total += await self._ingest(alerts)
            progress = min(90, int((chunk_end - start).total_seconds() / span * 100))
            self.state.update_progress(progress, f"Imported {total} alerts ({idx}/{len(chunks)} chunks)")
            if idx < len(chunks) and self.chunk_pause_seconds > 0:
                await asyncio.sleep(self.chunk_pause_seconds)

        self.state.update_progress(90, "Fetching active decisions")
        active_ok = True
        try:
            active = await self.client.fetch_alerts(since=None, until=None, active_only=True)
        except Exception as exc:  # noqa: BLE001
            active_ok = False
            last_error = str(exc)
            logger.warning("Active decision pass failed: %s", exc)
        else:
            total += await self._ingest(active)

        if failed == len(chunks) and not active_ok:
            reason = last_error or "upstream unavailable"
            self.state.fail_sync(reason, self.clock())
            raise BackfillError(reason)

        self.state.mark_updated(now, full=True)
        self.state.finish_sync(f"Imported {total} alerts", self.clock())
        logger.info("Historical sync finished: %s alerts, %s failed chunks", total, failed)
        return total

    async def _ingest(self, alerts: list[dict[str, Any]]) -> int:
        alert_rows, decision_rows = normalize_alerts(
            alerts, now=self.clock(), federated_origin=self.federated_origin
        )
        if not alert_rows:
            return 0
        return await asyncio.to_thread(self.store.upsert_batch, alert_rows, decision_rows)

    async def _refresh_active(self, alerts: list[dict[str, Any]]) -> int:
        _, decision_rows = normalize_alerts(alerts, now=self.clock(), federated_origin=self.federated_origin)
        if not decision_rows:
            return 0
        return await asyncio.to_thread(self.store.refresh_decisions, decision_rows)

    async def update_cache_delta(self) -> bool:
        """
        Pull alerts created since the last update and refresh active decisions.

        Alerts from the active set are not upserted: an alert normalized to zero
        decisions must not gain rows through this path.
        """
        if not self.state.is_initialized:
            return await self.initialize_cache()
        now = self.clock()
        last = self.state.last_update or (now - self.lookback)
        elapsed = now - last + timedelta(seconds=self.delta_buffer_seconds)
        since = format_duration(min(elapsed, self.lookback))
        new_result, active_result = await asyncio.gather(
            self.client.fetch_alerts(since=since, until=None, active_only=False),
            self.client.fetch_alerts(since=None, until=None, active_only=True),
            return_exceptions=True,
        )

        ok = True
        if isinstance(new_result, BaseException):
            ok = False
            logger.warning("Delta fetch failed: %s", new_result)
        else:
            imported = await self._ingest(new_result)
            logger.debug("Delta imported %s alerts since %s", imported, since)
        if isinstance(active_result, BaseException):
            logger.warning("Active decision refresh failed: %s", active_result)
        else:
            refreshed = await self._refresh_active(active_result)
            logger.debug("Refreshed %s active decisions", refreshed)

        if ok:
            self.state.mark_updated(now)
        return ok

    async def cleanup_old_data(self) -> tuple[int, int]:
        cutoff = to_iso(self.clock() - self.lookback)
        alerts, decisions = await asyncio.to_thread(self.store.evict_before, cutoff)
        if alerts or decisions:
            logger.info("Evicted %s alerts and %s decisions older than %s", alerts, decisions, cutoff)
        return alerts, decisions

    async def update_cache(self) -> bool:
        ok = await self.update_cache_delta()
        await self.cleanup_old_data()
        return ok

    async def clear_cache(self) -> bool:
        if self._backfill_task is not None:
            await asyncio.shield(self._backfill_task)
        await asyncio.to_thread(self.store.clear)
        self.state.reset()
        logger.info("Cache cleared; starting a fresh historical sync")
        return await self.initialize_cache()

    async def aclose(self) -> None:
        """Cancel a running backfill and wait for it to unwind."""
        task = self._backfill_task
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._backfill_task = None

    def get_sync_status(self) -> SyncStatus:
        return self.state.status()

    def get_cache_state(self) -> CacheState:
        alerts, decisions = self.store.counts()
        return CacheState(
            is_initialized=self.state.is_initialized,
            last_update=self.state.last_update,
            last_full_refresh=self.state.last_full_refresh,
            last_activity=self.state.last_activity,
            alert_count=alerts,
            decision_count=decisions,
            lookback_period=self.lookback_period,
            refresh_interval_ms=self.state.refresh_interval_ms,
            is_idle=self.state.is_idle(self.clock()),
            lapi_status=self.client.get_lapi_status(),
        )
