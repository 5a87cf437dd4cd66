"""Append-only event audit trail in SQLite.

History for operators only: nothing here is read back to restore state.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite

from .logs import logger


class EventLog:
    """Writes events to an `events` table. A None path disables it."""

    def __init__(self, db_path: Optional[Path]):
        self.db_path = db_path
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.db_path is not None

    async def init(self) -> None:
        if not self.enabled:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    activity TEXT,
                    details TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_created_at
                ON events(created_at DESC)
            """)
            await db.commit()

    async def log(self, event_type: str, activity: str = None, details: dict = None) -> None:
        """Insert one event. Failures are logged, never raised."""
        if not self.enabled:
            return
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT INTO events (event_type, activity, details, created_at) VALUES (?, ?, ?, ?)",
                    (event_type, activity, json.dumps(details) if details else None,
                     datetime.now().isoformat()),
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as e:
            logger.error(f"Failed to log event {event_type}: {e}")

    def log_soon(self, event_type: str, activity: str = None, details: dict = None) -> None:
        """Schedule log() from sync code running on the event loop."""
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, dropping event {event_type}")
            return
        task = loop.create_task(self.log(event_type, activity, details))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def recent(self, limit: int = 50) -> list[dict]:
        if not self.enabled:
            return []
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)
            )
            rows = await cursor.fetchall()
        return [
            {
                "id": row["id"],
                "event_type": row["event_type"],
                "activity": row["activity"],
                "details": json.loads(row["details"]) if row["details"] else None,
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def drain(self) -> None:
        """Wait for scheduled writes to finish (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
