from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime, timedelta
import logging
from typing import Callable, Protocol

from lapi_mirror.cache.store import CacheStore
from lapi_mirror.core.models import RefreshKind
from lapi_mirror.core.timeutil import utcnow
from lapi_mirror.sync.state import REFRESH_INTERVAL_META_KEY, SyncState

logger = logging.getLogger(__name__)

ALLOWED_REFRESH_INTERVALS_MS = (0, 5_000, 30_000, 60_000, 300_000)


class RefreshTarget(Protocol):
    async def refresh_full(self) -> bool: ...

    async def update_cache(self) -> bool: ...


class RefreshScheduler:
    """
    Self-rescheduling refresh loop with an active and an idle cadence.

    One task at most is outstanding. An activity observation made while idle
    wakes the pending wait so the next refresh runs immediately.
    """

    def __init__(
        self,
        engine: RefreshTarget,
        state: SyncState,
        store: CacheStore | None = None,
        *,
        idle_interval_ms: int = 300_000,
        full_refresh_interval_ms: int = 3_600_000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.state = state
        self.store = store
        self.idle_interval_ms = max(0, idle_interval_ms)
        self.full_refresh_interval = timedelta(milliseconds=max(0, full_refresh_interval_ms))
        self.clock = clock
        self.tick_count = 0
        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self._ticking = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_idle(self, now: datetime | None = None) -> bool:
        return self.state.is_idle(now or self.clock())

    def decide_refresh_kind(self, now: datetime) -> RefreshKind:
        if self.state.is_idle(now):
            return RefreshKind.DELTA
        last_full = self.state.last_full_refresh
        if last_full is None or now - last_full >= self.full_refresh_interval:
            return RefreshKind.FULL
        return RefreshKind.DELTA

    def next_interval_ms(self, now: datetime) -> int | None:
        """None means manual mode: no timer, reads refresh inline."""
        interval = self.state.refresh_interval_ms
        if interval <= 0:
            return None
        if self.state.is_idle(now) and interval < self.idle_interval_ms:
            return self.idle_interval_ms
        return interval

    def start(self) -> bool:
        self._cancel_pending()
        if self.state.refresh_interval_ms <= 0:
            logger.info("Refresh scheduler in manual mode; reads will refresh inline")
            return False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="lapi-mirror-refresh")
        logger.info("Refresh scheduler started (interval=%sms)", self.state.refresh_interval_ms)
        return True

    async def stop(self) -> None:
        task = self._task
        self._cancel_pending()
        if task is None or task is asyncio.current_task():
            return
        with suppress(asyncio.CancelledError):
            await task

    def _cancel_pending(self) -> None:
        task = self._task
        self._task = None
        self._wake = None
        if task is not None and not task.done():
            task.cancel()

    async def set_refresh_interval_ms(self, interval_ms: int) -> int:
        if interval_ms not in ALLOWED_REFRESH_INTERVALS_MS:
            allowed = ", ".join(str(x) for x in ALLOWED_REFRESH_INTERVALS_MS)
            raise ValueError(f"refresh interval must be one of: {allowed}")
        if self.store is not None:
            await asyncio.to_thread(self.store.set_meta, REFRESH_INTERVAL_META_KEY, str(interval_ms))
        self.state.refresh_interval_ms = interval_ms
        await self.stop()
        self.start()
        return interval_ms

    def record_activity(self) -> bool:
        """Note a client read. Returns True when the system was idle before this call."""
        now = self.clock()
        was_idle = self.state.is_idle(now)
        self.state.record_activity(now)
        if was_idle and self.is_running and not self._ticking and self._wake is not None:
            logger.debug("Activity after idle period; refreshing now")
            self._wake.set()
        return was_idle

    async def run_tick(self) -> RefreshKind:
        kind = self.decide_refresh_kind(self.clock())
        self._ticking = True
        try:
            if kind is RefreshKind.FULL:
                await self.engine.refresh_full()
            else:
                await self.engine.update_cache()
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled %s refresh failed", kind.value.lower())
        finally:
            self._ticking = False
            self.tick_count += 1
        return kind

    async def _run_loop(self) -> None:
        while True:
            delay_ms = self.next_interval_ms(self.clock())
            wake = self._wake
            if delay_ms is None or wake is None:
                return
            wake.clear()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(wake.wait(), timeout=delay_ms / 1000)
            await self.run_tick()
