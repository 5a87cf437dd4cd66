"""Shared fakes: an in-memory OS control surface and a manual clock."""

import asyncio
from collections import defaultdict

import pytest

from order_coffee.system import CommandResult


class FakeSystemControl:
    """Records every capability call. Operations succeed unless told otherwise."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, int] = defaultdict(int)
        self.hanging: set[str] = set()
        self.active_units: set[str] = set()
        self.available = True

    def fail(self, op: str, times: int = 1) -> None:
        """Make the next `times` calls of `op` fail."""
        self.failures[op] += times

    def hang(self, op: str) -> None:
        """Make every call of `op` block until cancelled."""
        self.hanging.add(op)

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    @property
    def suspend_calls(self) -> int:
        return self.count("request_suspend_now")

    async def _op(self, op: str, arg: str = "") -> CommandResult:
        self.calls.append((op, arg))
        if op in self.hanging:
            await asyncio.Event().wait()
        if self.failures[op] > 0:
            self.failures[op] -= 1
            return CommandResult(False, 1, f"{op} failed")
        return CommandResult(True, 0, "")

    async def check_available(self):
        if not self.available:
            return CommandResult(False, None, "systemctl is not available. This server requires systemd.")
        return CommandResult(True, 0, "systemd 255")

    async def request_suspend_now(self):
        return await self._op("request_suspend_now")

    async def start_service(self, unit):
        result = await self._op("start_service", unit)
        if result.success:
            self.active_units.add(unit)
        return result

    async def stop_service(self, unit):
        result = await self._op("stop_service", unit)
        if result.success:
            self.active_units.discard(unit)
        return result

    async def restart_service(self, unit):
        result = await self._op("restart_service", unit)
        if result.success:
            self.active_units.add(unit)
        return result

    async def reload_service_manager(self):
        return await self._op("reload_service_manager")

    async def force_kill_service(self, process_name):
        return await self._op("force_kill_service", process_name)

    async def is_service_active(self, unit):
        self.calls.append(("is_service_active", unit))
        if unit in self.active_units:
            return CommandResult(True, 0, "active")
        return CommandResult(False, 3, "inactive")


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def control():
    return FakeSystemControl()


@pytest.fixture
def clock():
    return FakeClock()
