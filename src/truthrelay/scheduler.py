"""Fixed-period driver for the relay pipeline.

Cycles run one at a time. A tick that arrives while a cycle is still in
flight is skipped rather than queued. On start, one forced cycle is run after
a short grace delay so the sink has time to connect.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from truthrelay.config import DEFAULT_POLL_INTERVAL_MINUTES
from truthrelay.logging import get_logger
from truthrelay.relay.pipeline import CycleReport, RelayPipeline
from truthrelay.state.store import ConnectionState, WatermarkStore

log = get_logger("truthrelay.scheduler")


def coerce_interval(value: object) -> int:
    """Return ``value`` as whole minutes ≥ 1, or the default."""
    try:
        minutes = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        minutes = 0
    if minutes < 1:
        log.warning(
            "invalid_poll_interval",
            value=value,
            default=DEFAULT_POLL_INTERVAL_MINUTES,
        )
        return DEFAULT_POLL_INTERVAL_MINUTES
    return minutes


class Scheduler:
    """Trigger pipeline cycles on a fixed cadence.

    Lifecycle::

        scheduler = Scheduler(pipeline, interval_minutes=5)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        pipeline: RelayPipeline,
        interval_minutes: int = DEFAULT_POLL_INTERVAL_MINUTES,
        *,
        store: WatermarkStore | None = None,
        startup_grace_seconds: float = 5.0,
        startup_limit: int = 1,
        reconnect_store: bool = False,
        store_timeout: float = 30.0,
        store_retry_delay: float = 5.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            pipeline: Pipeline to drive.
            interval_minutes: Minutes between periodic cycles.
            store: Watermark store whose connection state is checked before
                each cycle.
            startup_grace_seconds: Delay before the forced startup cycle.
            startup_limit: Number of posts fetched by the startup cycle.
            reconnect_store: Open a new connection window before a cycle when
                the store's initial window has failed.
            store_timeout: Length of that window in seconds.
            store_retry_delay: Seconds between attempts within the window.
        """
        self._pipeline = pipeline
        self._interval_minutes = coerce_interval(interval_minutes)
        self._store = store
        self._startup_grace = startup_grace_seconds
        self._startup_limit = startup_limit
        self._reconnect_store = reconnect_store
        self._store_timeout = store_timeout
        self._store_retry_delay = store_retry_delay

        self._lock = asyncio.Lock()
        self._running = False
        self._ticker: asyncio.Task[None] | None = None
        self._tick_cycle: asyncio.Task[CycleReport | None] | None = None
        self._cycles: set[asyncio.Task[CycleReport | None]] = set()
        self._skipped_ticks = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval_minutes * 60.0

    @property
    def interval_minutes(self) -> int:
        return self._interval_minutes

    @property
    def running(self) -> bool:
        return self._running

    @property
    def skipped_ticks(self) -> int:
        """Ticks dropped because a cycle was still running."""
        return self._skipped_ticks

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic loop and schedule the forced startup cycle."""
        if self._running:
            return
        self._running = True
        log.info("scheduler_started", interval_minutes=self._interval_minutes)
        self._spawn(self._initial_cycle(), name="truthrelay-initial-cycle")
        self._ticker = asyncio.create_task(self._tick_loop(), name="truthrelay-ticker")

    async def stop(self) -> None:
        """Stop scheduling and wait for an in-flight cycle to finish."""
        if not self._running:
            return
        self._running = False
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        if self._cycles:
            log.info("scheduler_waiting_for_cycle", pending=len(self._cycles))
            await asyncio.gather(*self._cycles, return_exceptions=True)
        log.info("scheduler_stopped")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_once(self, force: bool = False, limit: int | None = None) -> CycleReport | None:
        """Run one cycle now, waiting for any running cycle first."""
        async with self._lock:
            return await self._guarded_cycle(force=force, limit=limit)

    def trigger(self, force: bool = False, limit: int | None = None) -> bool:
        """Launch a cycle unless one is running; return whether it was launched."""
        pending = self._tick_cycle is not None and not self._tick_cycle.done()
        if self._lock.locked() or pending:
            self._skipped_ticks += 1
            log.warning(
                "poll_tick_skipped",
                reason="cycle_in_progress",
                skipped=self._skipped_ticks,
            )
            return False
        self._tick_cycle = self._spawn(
            self.run_once(force=force, limit=limit), name="truthrelay-cycle"
        )
        return True

    async def _initial_cycle(self) -> CycleReport | None:
        log.info("initial_poll_scheduled", grace_seconds=self._startup_grace)
        await asyncio.sleep(self._startup_grace)
        if not self._running:
            return None
        report = await self.run_once(force=True, limit=self._startup_limit)
        log.info("initial_poll_complete")
        return report

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            if not self._running:
                break
            log.debug("poll_tick")
            self.trigger()

    async def _guarded_cycle(self, force: bool, limit: int | None) -> CycleReport | None:
        try:
            await self._check_store()
            return await self._pipeline.run_cycle(force=force, limit=limit)
        except Exception:
            log.exception("poll_cycle_crashed", forced=force)
            return None

    async def _check_store(self) -> None:
        store = self._store
        if store is None or store.is_ready:
            return
        log.info("store_not_ready_before_cycle", state=store.state.value)
        if self._reconnect_store and store.state is ConnectionState.FAILED:
            await store.initialize(timeout=self._store_timeout, retry_delay=self._store_retry_delay)

    def _spawn(
        self, coro: Coroutine[Any, Any, CycleReport | None], name: str
    ) -> asyncio.Task[CycleReport | None]:
        task = asyncio.create_task(coro, name=name)
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task
