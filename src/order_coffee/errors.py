"""Error kinds raised by the suspension core."""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .services import ServiceResult


class OrderCoffeeError(Exception):
    """Base class for all core errors."""


class UnknownActivity(OrderCoffeeError, KeyError):
    """An activity name outside the configured closed set was referenced."""

    def __init__(self, name: str, known: tuple[str, ...] = ()):
        self.name = name
        self.known = known
        super().__init__(name)

    def __str__(self) -> str:
        if self.known:
            return f"Unknown activity '{self.name}'. Valid: {list(self.known)}"
        return f"Unknown activity '{self.name}'"


class RecoveryExhausted(OrderCoffeeError):
    """Every step of the recovery ladder failed."""

    def __init__(self, service: str, action: str, attempts: list):
        self.service = service
        self.action = action
        self.attempts = attempts
        last = attempts[-1].message if attempts else "no attempts made"
        super().__init__(f"All {service} {action} recovery attempts failed (last: {last})")


class ServiceUnavailable(OrderCoffeeError):
    """A dependent service could not be brought to the desired state."""

    def __init__(self, message: str, result: Optional["ServiceResult"] = None):
        self.result = result
        super().__init__(message)


class SuspendFailed(OrderCoffeeError):
    """The OS refused or failed to suspend."""
