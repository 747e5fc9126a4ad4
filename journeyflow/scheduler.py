"""Wake-up paths for suspended runs.

Two independent mechanisms resume a run whose DELAY has elapsed:

* :class:`DelayScheduler` arms an in-process timer per run. It gives low
  latency but is lost on restart, and cancelling it never touches stored
  state.
* :class:`ReadinessPoller` periodically asks the store for every run that is
  due and processes it. This is what recovers runs after a restart.

Both call the same ``process(run_id)`` entry point and rely on its preflight
and claim for idempotence; neither keeps any dedup state of its own.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .constants import (
    DEFAULT_POLL_BATCH_SIZE,
    DEFAULT_POLL_INTERVAL_SECONDS,
    POLL_BACKOFF_FACTOR,
    TIMER_GRACE_SECONDS,
)
from .persistence import RunRepository
from .persistence.models import utcnow
from .utils.retry import sweep_delay

logger = logging.getLogger(__name__)

WakeCallback = Callable[[str], Awaitable[Any]]


class DelayScheduler:
    """Owns the in-process wake-up timers, keyed by run id."""

    def __init__(self, grace_seconds: float = TIMER_GRACE_SECONDS) -> None:
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._grace_seconds = grace_seconds

    @property
    def pending_count(self) -> int:
        return len(self._timers)

    def is_scheduled(self, run_id: str) -> bool:
        return run_id in self._timers

    def schedule(
        self, run_id: str, delay_seconds: float, callback: WakeCallback
    ) -> asyncio.TimerHandle:
        """Call ``callback(run_id)`` after ``delay_seconds``.

        An earlier timer for the same run is replaced. Must be called from
        within a running event loop.
        """
        loop = asyncio.get_running_loop()
        self.cancel(run_id)
        delay = max(0.0, float(delay_seconds)) + self._grace_seconds
        handle = loop.call_later(delay, self._fire, run_id, callback)
        self._timers[run_id] = handle
        logger.debug(f"Scheduled wake-up for run {run_id} in {delay:.3f}s")
        return handle

    def _fire(self, run_id: str, callback: WakeCallback) -> None:
        self._timers.pop(run_id, None)
        logger.debug(f"Wake-up timer fired for run {run_id}")
        task = asyncio.get_running_loop().create_task(callback(run_id))
        self._inflight.add(task)
        task.add_done_callback(lambda t: self._wake_done(run_id, t))

    def _wake_done(self, run_id: str, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Resuming run {run_id} failed: {exc}", exc_info=exc)

    def cancel(self, run_id: str) -> bool:
        handle = self._timers.pop(run_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        """Drop every armed timer; stored wake times are left as they are."""
        count = len(self._timers)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if count:
            logger.info(f"Cancelled {count} pending wake-up timer(s)")
        return count

    async def aclose(self) -> None:
        """Cancel timers and wait for wake-ups that already started.

        A wake-up that reaches another DELAY re-arms a timer, so timers are
        cancelled again after every wait. No timer is left when this returns.
        """
        self.cancel_all()
        while self._inflight:
            waiting = list(self._inflight)
            await asyncio.gather(*waiting, return_exceptions=True)
            self._inflight.difference_update(waiting)
            self.cancel_all()


class ReadinessPoller:
    """Fixed-interval sweep that processes every run whose wake time passed."""

    def __init__(
        self,
        repository: RunRepository,
        process: WakeCallback,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_POLL_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._repository = repository
        self._process = process
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """Process one batch of ready runs; returns how many were found."""
        runs = await self._repository.find_ready_runs(self.batch_size, self._clock())
        if runs:
            logger.debug(f"Poller found {len(runs)} ready run(s)")
        for run in runs:
            try:
                await self._process(run.id)
            except Exception:
                logger.exception(f"Poller failed to process run {run.id}")
        return len(runs)

    async def _run_forever(self) -> None:
        failures = 0
        while True:
            try:
                await self.sweep()
                failures = 0
            except Exception:
                failures += 1
                logger.exception("Readiness sweep failed")
            await asyncio.sleep(
                sweep_delay(self.interval_seconds, failures, POLL_BACKOFF_FACTOR)
            )

    def start(self) -> asyncio.Task:
        """Start sweeping now and then every ``interval_seconds``."""
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.get_running_loop().create_task(
            self._run_forever(), name="journeyflow-readiness-poller"
        )
        logger.info(
            f"Readiness poller started (interval={self.interval_seconds}s, batch={self.batch_size})"
        )
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Readiness poller stopped")
