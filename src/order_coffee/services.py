"""Dependent service lifecycle with an escalating recovery ladder.

Each ladder is an ordered list of async steps sharing one signature. Steps
run until one succeeds; each is bounded by a timeout that counts as that
step's failure. Never more than three attempts per call.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import RecoveryExhausted, ServiceUnavailable
from .events import EventLog
from .logs import logger
from .registry import ActivityRegistry
from .system import CommandResult, SystemControl


@dataclass(frozen=True)
class ServiceConfig:
    key: str  # activity name and error subsystem, e.g. "ollama"
    unit: str  # systemd unit, e.g. "ollama.service"
    process_name: Optional[str] = None  # pkill -f pattern for force kills


KNOWN_SERVICES: dict[str, ServiceConfig] = {
    "ollama": ServiceConfig("ollama", "ollama.service", "ollama"),
    "comfy-unsafe": ServiceConfig("comfy-unsafe", "comfy-unsafe.service", "comfy-unsafe"),
    "comfy-safe": ServiceConfig("comfy-safe", "comfy-safe.service", "comfy-safe"),
}


def service_config(key: str) -> ServiceConfig:
    """Known config for `key`, or `<key>.service` with a pkill pattern of `key`."""
    return KNOWN_SERVICES.get(key) or ServiceConfig(key, f"{key}.service", key)


class ServiceAction(str, Enum):
    START = "start"
    STOP = "stop"


class RecoveryStep(str, Enum):
    NORMAL = "normal"
    FORCE_KILL_RETRY = "force_kill_retry"
    DAEMON_RELOAD_RESTART = "daemon_reload_restart"


@dataclass
class RecoveryAttempt:
    step: RecoveryStep
    success: bool
    message: str = ""
    duration_s: float = 0.0


@dataclass
class ServiceResult:
    service: str
    action: ServiceAction
    success: bool
    attempts: list[RecoveryAttempt] = field(default_factory=list)

    @property
    def recovered(self) -> bool:
        return self.success and len(self.attempts) > 1


Step = Callable[[], Awaitable[CommandResult]]


class ServiceLifecycleController:
    """Brings one systemd service to a running or stopped state."""

    def __init__(
        self,
        service: ServiceConfig,
        control: SystemControl,
        registry: ActivityRegistry,
        step_timeout_s: float = 30.0,
        settle_delay_s: float = 2.0,
        events: Optional[EventLog] = None,
    ):
        self.service = service
        self.control = control
        self.registry = registry
        self.step_timeout_s = step_timeout_s
        self.settle_delay_s = settle_delay_s
        self._events = events
        self._op_lock = asyncio.Lock()
        self._in_flight = 0

    @property
    def name(self) -> str:
        return self.service.key

    @property
    def in_flight(self) -> bool:
        return self._in_flight > 0

    # ---- Ladder ----

    def ladder(self, action: ServiceAction) -> list[tuple[RecoveryStep, Step]]:
        unit = self.service.unit
        primary = self.control.start_service if action is ServiceAction.START else self.control.stop_service

        async def normal() -> CommandResult:
            return await primary(unit)

        async def force_kill_retry() -> CommandResult:
            if self.service.process_name:
                killed = await self.control.force_kill_service(self.service.process_name)
                if not killed.success:
                    logger.warning(f"Force kill failed: {killed.message}")
            # Give killed processes a moment to clean up
            await asyncio.sleep(self.settle_delay_s)
            return await primary(unit)

        async def daemon_reload_restart() -> CommandResult:
            reloaded = await self.control.reload_service_manager()
            if not reloaded.success:
                logger.warning(f"Systemd reload failed: {reloaded.message}")
            restarted = await self.control.restart_service(unit)
            if action is ServiceAction.START or not restarted.success:
                return restarted
            return await self.control.stop_service(unit)

        return [
            (RecoveryStep.NORMAL, normal),
            (RecoveryStep.FORCE_KILL_RETRY, force_kill_retry),
            (RecoveryStep.DAEMON_RELOAD_RESTART, daemon_reload_restart),
        ]

    async def _run_step(self, step: RecoveryStep, fn: Step) -> RecoveryAttempt:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(fn(), timeout=self.step_timeout_s)
            success, message = result.success, result.message
        except asyncio.TimeoutError:
            success, message = False, f"step timed out after {self.step_timeout_s:g}s"
        except OSError as e:
            success, message = False, str(e)
        return RecoveryAttempt(step, success, message, time.monotonic() - started)

    async def run_ladder(self, action: ServiceAction, steps: list[tuple[RecoveryStep, Step]] = None) -> ServiceResult:
        """Run steps in order until one succeeds.

        Raises RecoveryExhausted when every step failed.
        """
        steps = steps if steps is not None else self.ladder(action)
        result = ServiceResult(self.name, action, success=False)
        for index, (step, fn) in enumerate(steps):
            if index:
                logger.warning(f"Recovery step {index}: {step.value} ({self.service.unit} {action.value})")
            attempt = await self._run_step(step, fn)
            result.attempts.append(attempt)
            if attempt.success:
                result.success = True
                if index:
                    logger.info(f"{self.service.unit} {action.value} recovered at step {step.value}")
                return result
            logger.warning(f"{self.service.unit} {action.value} failed at {step.value}: {attempt.message}")
        raise RecoveryExhausted(self.service.unit, action.value, result.attempts)

    # ---- Public operations ----

    async def ensure_started(self) -> ServiceResult:
        return await self._ensure(ServiceAction.START)

    async def ensure_stopped(self) -> ServiceResult:
        return await self._ensure(ServiceAction.STOP)

    async def _ensure(self, action: ServiceAction) -> ServiceResult:
        self._in_flight += 1
        try:
            async with self._op_lock:
                try:
                    result = await self.run_ladder(action)
                except RecoveryExhausted as e:
                    verb = "start" if action is ServiceAction.START else "stop"
                    message = f"{self.name} service failed to {verb}: {e}"
                    logger.error(message)
                    self.registry.record_error(message, self.name)
                    failed = ServiceResult(self.name, action, False, e.attempts)
                    await self._log_result(failed)
                    raise ServiceUnavailable(message, failed) from e

                self.registry.clear_errors_for(self.name)
                await self._log_result(result)
                return result
        finally:
            self._in_flight -= 1

    async def _log_result(self, result: ServiceResult) -> None:
        if not self._events:
            return
        await self._events.log(
            f"service_{result.action.value}_{'ok' if result.success else 'failed'}",
            activity=self.name,
            details={"steps": [a.step.value for a in result.attempts],
                     "last": result.attempts[-1].message if result.attempts else ""},
        )

    async def synchronize(self, desired_running: bool) -> None:
        """Bring the service in line with the initial flag value. Never raises."""
        logger.info(f"Initializing {self.service.unit} service state")
        status = await self.control.is_service_active(self.service.unit)
        if status.returncode is None:
            logger.warning(f"Failed to check {self.service.unit} status during initialization: {status.message}")
            return
        if status.success == desired_running:
            logger.info(f"{self.service.unit} is already {'active' if status.success else 'inactive'}, no action needed")
            return
        try:
            if desired_running:
                await self.ensure_started()
            else:
                await self.ensure_stopped()
        except ServiceUnavailable as e:
            logger.warning(f"Could not synchronize {self.service.unit}: {e}")
