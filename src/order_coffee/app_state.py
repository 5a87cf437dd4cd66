"""Application state: wires registry, scheduler and service controllers."""

from __future__ import annotations

import time
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import Config
from .errors import UnknownActivity
from .events import EventLog
from .logs import logger
from .registry import ActivityRegistry
from .scheduler import SuspensionScheduler
from .services import ServiceLifecycleController, service_config
from .system import SystemControl


class AppState:
    """Everything a request handler touches, built once per server."""

    def __init__(
        self,
        config: Config,
        control: Optional[SystemControl] = None,
        scheduler=None,
        clock=time.monotonic,
    ):
        self.config = config
        self.control = control or SystemControl(timeout=config.command_timeout_s)
        self.events = EventLog(config.db_path)
        self.registry = ActivityRegistry(config.activities, max_errors=config.max_errors)
        self.scheduler = scheduler if scheduler is not None else AsyncIOScheduler()
        self.suspension = SuspensionScheduler(
            self.registry,
            self.control.request_suspend_now,
            self.scheduler,
            duration_s=config.timer_seconds,
            defer_s=config.defer_s,
            clock=clock,
            events=self.events,
        )
        self.controllers: dict[str, ServiceLifecycleController] = {
            key: ServiceLifecycleController(
                service_config(key),
                self.control,
                self.registry,
                step_timeout_s=config.step_timeout_s,
                settle_delay_s=config.settle_delay_s,
                events=self.events,
            )
            for key in config.services
        }
        for controller in self.controllers.values():
            self.suspension.add_defer_guard(lambda c=controller: c.in_flight)
        self.start_time = time.monotonic()

    # ---- Lifecycle ----

    async def startup(self) -> None:
        available = await self.control.check_available()
        if not available.success:
            raise RuntimeError(available.message)
        logger.info("systemctl is available")

        await self.events.init()
        # Every flag starts clear, so bound services start stopped
        for controller in self.controllers.values():
            await controller.synchronize(desired_running=False)

        self.scheduler.start()
        self.suspension.start_wake_recovery(self.config.wake_check_interval_s)
        self.suspension.evaluate()
        logger.info("Initial state check triggered")
        await self.events.log("server_started", details={"timer_seconds": self.config.timer_seconds})

    async def shutdown(self) -> None:
        self.suspension.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.events.log("server_stopped")
        await self.events.drain()

    # ---- Flag toggles ----

    def _check_known(self, name: str) -> None:
        if name not in self.registry.names:
            raise UnknownActivity(name, self.registry.names)

    async def activate(self, name: str, action: Optional[str] = None) -> bool:
        """Start the bound service (if any), then set the flag.

        ServiceUnavailable propagates and the flag stays clear.
        """
        self._check_known(name)
        controller = self.controllers.get(name)
        if controller:
            await controller.ensure_started()
        busy = self.registry.set_flag(name, action)
        await self.events.log("flag_set", activity=name, details={"busy": busy})
        return busy

    async def deactivate(self, name: str, action: Optional[str] = None) -> bool:
        """Stop the bound service (if any), then clear the flag.

        ServiceUnavailable propagates and the flag stays set.
        """
        self._check_known(name)
        controller = self.controllers.get(name)
        if controller:
            await controller.ensure_stopped()
        busy = self.registry.clear_flag(name, action)
        await self.events.log("flag_cleared", activity=name, details={"busy": busy})
        return busy

    # ---- Reporting ----

    def uptime(self) -> str:
        total = int(time.monotonic() - self.start_time)
        hours, minutes, seconds = total // 3600, (total % 3600) // 60, total % 60
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    def status(self) -> dict:
        snapshot = self.registry.snapshot()
        last = self.registry.last_action
        remaining = self.suspension.remaining_seconds()
        return {
            "states": {"flags": snapshot.flags, "errors": snapshot.errors},
            "busy": snapshot.busy,
            "timer_active": remaining is not None,
            "timer_remaining_seconds": remaining,
            "uptime": self.uptime(),
            "port": self.config.port,
            "host": self.config.host,
            "last_action": last.name if last else None,
            "last_action_time": last.timestamp if last else None,
        }
