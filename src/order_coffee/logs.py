"""Logging for order-coffee: named logger, in-memory buffer and crash log."""

import logging
import sys
import traceback
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Optional

logger = logging.getLogger("order_coffee")
logger.setLevel(logging.INFO)

# Circular buffer to store recent log entries (max 100)
log_buffer: Deque[dict] = deque(maxlen=100)

# Set by install_crash_handlers(); None disables crash file writes
CRASH_LOG_PATH: Optional[Path] = None


class LogBufferHandler(logging.Handler):
    """Logging handler that captures records into the circular buffer."""

    def emit(self, record: logging.LogRecord):
        try:
            log_buffer.append({
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)


buffer_handler = LogBufferHandler()
buffer_handler.setLevel(logging.DEBUG)
buffer_handler.setFormatter(logging.Formatter("%(message)s"))
logger.addHandler(buffer_handler)

# Also capture uvicorn and fastapi logs
logging.getLogger("uvicorn").addHandler(buffer_handler)
logging.getLogger("fastapi").addHandler(buffer_handler)


def configure_logging(verbose: bool = False) -> None:
    """Set the log level and attach a stderr handler once."""
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    if not any(getattr(h, "_order_coffee_console", False) for h in logger.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        console._order_coffee_console = True
        logger.addHandler(console)


def recent_logs(limit: int = 50) -> list[dict]:
    """Return up to `limit` of the most recent buffered entries (max 100)."""
    limit = max(0, min(limit, 100))
    if limit == 0:
        return []
    return list(log_buffer)[-limit:]


# ============ Crash Logging ============


def _append_crash_log(text: str) -> None:
    if CRASH_LOG_PATH is None:
        return
    try:
        CRASH_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with open(CRASH_LOG_PATH, "a") as f:
            f.write(text)
    except OSError as e:
        print(f"Failed to write crash log: {e}", file=sys.stderr)


def log_crash(exc_type, exc_value, exc_tb, context: str = "unhandled"):
    """Write crash info to the crash log for post-mortem debugging."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    tb_str = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
    _append_crash_log(f"\n{'=' * 60}\nCRASH [{context}] at {timestamp}\n{'=' * 60}\n{tb_str}\n")
    # Also print to stderr so journald captures it
    print(f"CRASH [{context}]: {exc_type.__name__}: {exc_value}", file=sys.stderr)


def log_lifecycle(message: str) -> None:
    """Mark server start/stop in the crash log for context."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    _append_crash_log(f"--- {message} at {timestamp} ---\n")


def _global_exception_handler(exc_type, exc_value, exc_tb):
    log_crash(exc_type, exc_value, exc_tb, context="sync")
    sys.__excepthook__(exc_type, exc_value, exc_tb)


def asyncio_exception_handler(loop, context):
    """Handler for uncaught exceptions in asyncio tasks."""
    exception = context.get("exception")
    if exception:
        log_crash(type(exception), exception, exception.__traceback__, context="asyncio")
    else:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        _append_crash_log(f"\n{'=' * 60}\nASYNCIO ERROR at {timestamp}\n{'=' * 60}\n{context}\n\n")
    loop.default_exception_handler(context)


def install_crash_handlers(crash_log_path: Optional[Path]) -> None:
    """Route uncaught sync exceptions to the crash log."""
    global CRASH_LOG_PATH
    CRASH_LOG_PATH = crash_log_path
    sys.excepthook = _global_exception_handler
