from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Iterator

from .models import TransitionEvent, utc_now
from .settings import settings


Subscriber = Callable[[TransitionEvent], None]


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet), the DB file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "acp.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class EventLog:
    """SQLite backed event log; the default observability sink.

    Every state transition in the control plane is recorded as one row
    ``{ts, entity_id, from_state, to_state, reason}``. Free-form operational
    messages share the same table with ``from_state``/``to_state`` left empty.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = _resolve_db_path(db_path or settings.db_path)
        self.sink_failures = 0
        self._subscribers: list[Subscriber] = []
        self._lock = Lock()
        self.init_db()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  entity_id TEXT,
                  from_state TEXT,
                  to_state TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity_id);
                """
            )

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def log(self, level: str, message: str, entity_id: str | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, entity_id, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level.upper(), entity_id, message),
            )

    def transition(
        self,
        entity_id: str,
        from_state: str | None,
        to_state: str,
        reason: str = "",
        level: str = "INFO",
    ) -> TransitionEvent:
        ev = TransitionEvent(entity_id=entity_id, from_state=from_state, to_state=to_state, reason=reason)
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO events (ts, level, entity_id, from_state, to_state, message)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (ev.timestamp, level.upper(), entity_id, from_state, to_state, reason),
            )

        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(ev)
            except Exception as e:
                # A broken sink must not interrupt the transition that triggered it.
                self.sink_failures += 1
                self.log("ERROR", f"Event sink {getattr(fn, '__name__', fn)!r} failed: {type(e).__name__}: {e}", entity_id)
        return ev

    def latest(self, limit: int = 100, entity_id: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if entity_id:
                rows = conn.execute(
                    "SELECT * FROM events WHERE entity_id=? ORDER BY id DESC LIMIT ?",
                    (entity_id, limit),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def transitions(self, entity_id: str) -> list[tuple[str | None, str]]:
        """(from_state, to_state) pairs for one entity, oldest first."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT from_state, to_state FROM events
                WHERE entity_id=? AND to_state IS NOT NULL
                ORDER BY id
                """,
                (entity_id,),
            ).fetchall()
            return [(r["from_state"], r["to_state"]) for r in rows]
