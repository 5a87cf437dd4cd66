"""Activity registry: named busy flags, aggregate decision and error log.

Pure bookkeeping. The registry owns the lock that serializes every mutation
of the core state; the suspension scheduler shares it.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import UnknownActivity
from .logs import logger

BusyListener = Callable[[bool], None]


@dataclass(frozen=True)
class ErrorEntry:
    message: str
    subsystem: Optional[str] = None


@dataclass(frozen=True)
class LastAction:
    name: str
    timestamp: datetime


@dataclass(frozen=True)
class RegistrySnapshot:
    flags: dict[str, bool] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def busy(self) -> bool:
        return any(self.flags.values())


class ActivityRegistry:
    """Holds the closed set of activity flags.

    Listeners are called with the new aggregate busy value on each edge
    (false to true or true to false), while the lock is still held.
    """

    def __init__(self, names: tuple[str, ...], max_errors: int = 50):
        if not names:
            raise ValueError("ActivityRegistry needs at least one activity name")
        self.lock = threading.RLock()
        self._names = tuple(names)
        self._flags: dict[str, bool] = {name: False for name in self._names}
        self._errors: deque[ErrorEntry] = deque(maxlen=max_errors)
        self._listeners: list[BusyListener] = []
        self._last_action: Optional[LastAction] = None
        self._snapshot = RegistrySnapshot(flags=dict(self._flags), errors=[])

    # ---- Read-only ----

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def busy(self) -> bool:
        return self._snapshot.busy

    @property
    def last_action(self) -> Optional[LastAction]:
        return self._last_action

    def snapshot(self) -> RegistrySnapshot:
        """Most recently committed state. Never blocks."""
        return self._snapshot

    def subscribe(self, listener: BusyListener) -> None:
        with self.lock:
            self._listeners.append(listener)

    # ---- Flags ----

    def set_flag(self, name: str, action: Optional[str] = None) -> bool:
        return self._update(name, True, action or name)

    def clear_flag(self, name: str, action: Optional[str] = None) -> bool:
        return self._update(name, False, action or f"{name}-off")

    def _update(self, name: str, value: bool, action: str) -> bool:
        if name not in self._flags:
            raise UnknownActivity(name, self._names)

        with self.lock:
            was_busy = any(self._flags.values())
            self._flags[name] = value
            busy = any(self._flags.values())
            self._last_action = LastAction(action, datetime.now(timezone.utc))
            self._commit()
            logger.info(f"Activity {name} -> {value} (busy={busy})")

            if busy != was_busy:
                for listener in list(self._listeners):
                    listener(busy)
            return busy

    # ---- Errors ----

    def record_error(self, message: str, subsystem: Optional[str] = None) -> None:
        """Append to the error log. A message already present is not repeated."""
        with self.lock:
            if any(entry.message == message for entry in self._errors):
                logger.debug(f"Suppressed duplicate error: {message}")
                return
            logger.warning(f"Adding error to state: {message}")
            self._errors.append(ErrorEntry(message, subsystem))
            self._commit()

    def clear_errors_for(self, subsystem: str) -> int:
        """Drop every error attributed to `subsystem`. Returns the count removed."""
        with self.lock:
            kept = [e for e in self._errors if e.subsystem != subsystem]
            removed = len(self._errors) - len(kept)
            if removed:
                self._errors.clear()
                self._errors.extend(kept)
                self._commit()
                logger.info(f"Cleared {removed} errors for component: {subsystem}")
            return removed

    def _commit(self) -> None:
        # Caller holds the lock
        self._snapshot = RegistrySnapshot(
            flags=dict(self._flags),
            errors=[e.message for e in self._errors],
        )
