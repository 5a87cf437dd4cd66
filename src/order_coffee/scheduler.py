"""Suspension scheduler: the countdown between all-clear and suspend.

Two states: Armed-off (no countdown) and Armed-on (one APScheduler date job
with a fixed deadline). Every arm gets a fresh token; an expiry carrying a
stale token is ignored, so a superseded countdown can never fire.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from .errors import SuspendFailed
from .events import EventLog
from .logs import logger
from .registry import ActivityRegistry
from .system import CommandResult

COUNTDOWN_JOB_ID = "suspension-countdown"
WAKE_CHECK_JOB_ID = "wake-up-recovery"
SUSPEND_SUBSYSTEM = "suspend"

Suspender = Callable[[], Awaitable[CommandResult]]
DeferGuard = Callable[[], bool]


@dataclass(frozen=True)
class TimerState:
    """Inactive when deadline is None. Deadlines use the scheduler's clock."""

    deadline: Optional[float] = None
    started_at: Optional[float] = None
    token: int = 0

    @property
    def active(self) -> bool:
        return self.deadline is not None


class SuspensionScheduler:
    def __init__(
        self,
        registry: ActivityRegistry,
        suspend: Suspender,
        scheduler,
        duration_s: float = 600.0,
        defer_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        events: Optional[EventLog] = None,
    ):
        self._registry = registry
        self._lock = registry.lock
        self._suspend_now = suspend
        self._scheduler = scheduler
        self.duration_s = duration_s
        self.defer_s = defer_s
        self._clock = clock
        self._events = events
        self._state = TimerState()
        self._tokens = itertools.count(1)
        self._guards: list[DeferGuard] = []
        self._suspended = False
        self.suspend_count = 0
        registry.subscribe(self.on_busy_changed)

    # ---- Read-only ----

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state.active

    def remaining_seconds(self) -> Optional[int]:
        """Whole seconds until expiry, 0 once overdue, None when Armed-off."""
        state = self._state
        if not state.active:
            return None
        return int(max(0.0, state.deadline - self._clock()))

    def add_defer_guard(self, guard: DeferGuard) -> None:
        """Expiry is postponed while any guard returns True."""
        self._guards.append(guard)

    # ---- Transitions ----

    def on_busy_changed(self, busy: bool) -> None:
        with self._lock:
            if busy:
                if self._state.active:
                    logger.info("State became active, cancelling suspension timer")
                    self._disarm("countdown_cancelled")
            elif not self._state.active:
                self._arm()

    def evaluate(self) -> bool:
        """Arm if idle and not already counting down. Returns the active flag."""
        with self._lock:
            if not self._registry.busy and not self._state.active:
                self._arm()
            return self._state.active

    def cancel(self) -> None:
        with self._lock:
            if self._state.active:
                self._disarm("countdown_cancelled")

    def _arm(self) -> None:
        # Caller holds the lock
        now = self._clock()
        token = next(self._tokens)
        self._state = TimerState(deadline=now + self.duration_s, started_at=now, token=token)
        self._schedule_expiry(self.duration_s, token)
        logger.info(f"All states inactive, starting suspension timer for {self.duration_s:g}s")
        if self._events:
            self._events.log_soon("countdown_armed", details={"seconds": self.duration_s})

    def _schedule_expiry(self, delay_s: float, token: int) -> None:
        self._scheduler.add_job(
            self._expire,
            trigger="date",
            run_date=datetime.now() + timedelta(seconds=delay_s),
            args=[token],
            id=COUNTDOWN_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )

    def _disarm(self, event_type: Optional[str] = None) -> None:
        # Caller holds the lock
        self._state = TimerState()
        try:
            self._scheduler.remove_job(COUNTDOWN_JOB_ID)
        except JobLookupError:
            pass  # Already fired or never scheduled
        if event_type and self._events:
            self._events.log_soon(event_type)

    # ---- Expiry ----

    async def _expire(self, token: int) -> None:
        with self._lock:
            state = self._state
            if not state.active or state.token != token:
                logger.debug(f"Ignoring superseded countdown {token}")
                return
            if self._registry.busy:
                self._disarm("countdown_cancelled")
                return
            # The job runs on wall time; the deadline is monotonic and does not
            # advance while the host sleeps
            now = self._clock()
            if now < state.deadline:
                logger.info(f"Countdown job ran {state.deadline - now:.0f}s early, rescheduling")
                self._schedule_expiry(state.deadline - now, token)
                return
            if any(guard() for guard in self._guards):
                logger.info(f"Service operation in flight, deferring suspension {self.defer_s:g}s")
                self._schedule_expiry(self.defer_s, token)
                if self._events:
                    self._events.log_soon("countdown_deferred")
                return
            # Past this point the suspend is dispatched and cannot be cancelled
            self._state = TimerState()

        logger.info("Suspension timer expired, triggering system suspension")
        try:
            await self._suspend()
        except SuspendFailed as e:
            logger.error(f"Failed to suspend system: {e}")
            self._registry.record_error(f"System suspension failed: {e}", SUSPEND_SUBSYSTEM)
            if self._events:
                await self._events.log("suspend_failed", details={"error": str(e)})
            return

        self.suspend_count += 1
        self._suspended = True
        self._registry.clear_errors_for(SUSPEND_SUBSYSTEM)
        if self._events:
            await self._events.log("suspended")

    async def _suspend(self) -> None:
        try:
            result = await self._suspend_now()
        except OSError as e:
            raise SuspendFailed(str(e)) from e
        if not result.success:
            raise SuspendFailed(result.message)

    # ---- Wake-up recovery ----

    async def check_wake(self) -> bool:
        """Re-evaluate once after a successful suspend. Returns True if it did."""
        with self._lock:
            if not self._suspended:
                return False
            self._suspended = False
        logger.info("System wake-up detected, triggering state check")
        self.evaluate()
        return True

    def start_wake_recovery(self, interval_s: float = 15.0) -> None:
        self._scheduler.add_job(
            self.check_wake,
            IntervalTrigger(seconds=interval_s),
            id=WAKE_CHECK_JOB_ID,
            replace_existing=True,
        )
