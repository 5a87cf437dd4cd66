"""Server configuration: defaults, then ORDER_COFFEE_* env vars, then CLI flags."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

DEFAULT_PORT = 20553
DEFAULT_HOST = "0.0.0.0"
DEFAULT_TIMER_MINUTES = 10.0
DEFAULT_ACTIVITIES = ("coffee", "ollama")
DEFAULT_SERVICES = ("ollama",)
STATE_DIR = Path.home() / ".order-coffee"
ENV_FILE = STATE_DIR / ".env"

ENV_PREFIX = "ORDER_COFFEE_"


def _env(name: str) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_list(name: str) -> Optional[tuple[str, ...]]:
    value = _env(name)
    if value is None:
        return None
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _env_bool(name: str) -> Optional[bool]:
    value = _env(name)
    if value is None:
        return None
    return value.lower() in ("1", "true", "yes", "on")


def _env_number(name: str, kind=float):
    value = _env(name)
    return kind(value) if value is not None else None


@dataclass(frozen=True)
class Config:
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    timer_minutes: float = DEFAULT_TIMER_MINUTES
    verbose: bool = False
    activities: tuple[str, ...] = DEFAULT_ACTIVITIES
    # Activities whose toggling also drives the systemd service of the same key
    services: tuple[str, ...] = DEFAULT_SERVICES
    step_timeout_s: float = 30.0
    settle_delay_s: float = 2.0
    defer_s: float = 5.0
    wake_check_interval_s: float = 15.0
    command_timeout_s: float = 20.0
    max_errors: int = 50
    db_path: Optional[Path] = field(default_factory=lambda: STATE_DIR / "events.db")
    crash_log_path: Optional[Path] = field(default_factory=lambda: STATE_DIR / "crash.log")

    @property
    def timer_seconds(self) -> float:
        return self.timer_minutes * 60

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def log_level(self) -> str:
        return "debug" if self.verbose else "info"

    def validate(self) -> "Config":
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}")
        if self.timer_minutes <= 0:
            raise ValueError(f"Timer must be positive, got {self.timer_minutes}")
        if not self.activities:
            raise ValueError("At least one activity is required")
        if len(set(self.activities)) != len(self.activities):
            raise ValueError(f"Duplicate activity names: {list(self.activities)}")
        unbound = [s for s in self.services if s not in self.activities]
        if unbound:
            raise ValueError(f"Services without a matching activity: {unbound}")
        for name in ("step_timeout_s", "command_timeout_s", "defer_s", "wake_check_interval_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_errors < 1:
            raise ValueError("max_errors must be at least 1")
        if self.settle_delay_s < 0:
            raise ValueError("settle_delay_s must not be negative")
        return self

    def with_overrides(self, **overrides) -> "Config":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls) -> "Config":
        """Build a config from defaults overridden by ORDER_COFFEE_* variables."""
        db_path = _env("DB")
        crash_log = _env("CRASH_LOG")
        try:
            overrides = dict(
                port=_env_number("PORT", int),
                host=_env("HOST"),
                timer_minutes=_env_number("TIMER"),
                verbose=_env_bool("VERBOSE"),
                activities=_env_list("ACTIVITIES"),
                services=_env_list("SERVICES"),
                step_timeout_s=_env_number("STEP_TIMEOUT"),
                settle_delay_s=_env_number("SETTLE_DELAY"),
                defer_s=_env_number("DEFER"),
                wake_check_interval_s=_env_number("WAKE_CHECK_INTERVAL"),
                command_timeout_s=_env_number("COMMAND_TIMEOUT"),
                max_errors=_env_number("MAX_ERRORS", int),
                db_path=Path(db_path).expanduser() if db_path else None,
                crash_log_path=Path(crash_log).expanduser() if crash_log else None,
            )
        except ValueError as e:
            raise ValueError(f"Invalid {ENV_PREFIX}* environment value: {e}") from e
        config = cls().with_overrides(**overrides)
        # "none" disables the event database entirely
        if db_path and db_path.lower() == "none":
            config = replace(config, db_path=None)
        return config.validate()
