from __future__ import annotations

import os
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

from .logging import get_logger

log = get_logger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount that Docker
    created as a directory), the journal file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "tcm.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


@dataclass(frozen=True)
class EventRow:
    id: int
    ts: str
    level: str
    container: str | None
    project: str | None
    message: str


class Journal:
    """Append-only activity log of lifecycle operations.

    The journal is informational: a write that fails is logged and never
    fails the operation that produced it. An empty path disables it.
    """

    def __init__(self, path: str):
        self.path = _resolve_db_path(path) if path else ""

    @property
    def enabled(self) -> bool:
        return bool(self.path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Connection committed on success, rolled back on error, always closed."""
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        with closing(conn), conn:
            yield conn

    def init(self) -> None:
        """Create tables if they do not exist."""
        if not self.enabled:
            return
        try:
            with self.connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS events (
                      id INTEGER PRIMARY KEY AUTOINCREMENT,
                      ts TEXT NOT NULL,
                      level TEXT NOT NULL,
                      container TEXT,
                      project TEXT,
                      message TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                    """
                )
        except sqlite3.Error as e:
            log.warning("Could not initialise journal.", path=self.path, err=str(e))
            self.path = ""

    def log_event(
        self, level: str, message: str, container: str | None = None, project: str | None = None
    ) -> None:
        if not self.enabled:
            return
        try:
            with self.connect() as conn:
                conn.execute(
                    "INSERT INTO events (ts, level, container, project, message) VALUES (?, ?, ?, ?, ?)",
                    (utc_now(), level.upper(), container, project, message),
                )
        except sqlite3.Error as e:
            log.warning("Could not write journal entry.", path=self.path, err=str(e))

    def latest(self, limit: int = 100) -> list[EventRow]:
        if not self.enabled:
            return []
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [EventRow(**dict(r)) for r in rows]

    def latest_dicts(self, limit: int = 100) -> list[dict[str, Any]]:
        return [r.__dict__.copy() for r in self.latest(limit)]
