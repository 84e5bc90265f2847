"""SQLite-backed persistence of chat sessions."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .config import APP_NAME
from .conversation import Message
from .errors import StoreError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    session_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    name TEXT,
    tool_call_id TEXT,
    tool_calls TEXT,
    PRIMARY KEY (session_id, idx),
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);
"""


def data_dir() -> Path:
    """Return the data directory, respecting XDG_DATA_HOME."""
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_session_id() -> str:
    return f"s-{int(time.time())}"


class SessionStore:
    """Sessions are identified by id; a save replaces the stored messages."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else data_dir() / "sessions.db"
        self._initialized = False

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection. Commits on success, rolls back on exception."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"cannot open session database {self.path}: {e}") from e
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            if not self._initialized:
                conn.executescript(_SCHEMA)
                self._initialized = True
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.debug("session database operation rolled back", exc_info=True)
            raise StoreError(f"session database error: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def last(self) -> str | None:
        """Id of the most recently updated session, if any."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT id FROM sessions ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
        return row[0] if row else None

    def exists(self, session_id: str) -> bool:
        with self.connect() as conn:
            row = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return row is not None

    def list(self, limit: int = 20) -> list[tuple[str, str, int]]:
        """Return ``(id, updated_at, message_count)``, most recent first."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT s.id, s.updated_at, COUNT(m.idx)
                FROM sessions s LEFT JOIN messages m ON m.session_id = s.id
                GROUP BY s.id
                ORDER BY s.updated_at DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [(r[0], r[1], r[2]) for r in rows]

    def load(self, session_id: str) -> list[Message]:
        """Messages of a session in order; empty if the session is unknown."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, name, tool_call_id, tool_calls
                FROM messages WHERE session_id = ? ORDER BY idx
                """,
                (session_id,),
            ).fetchall()
        messages = []
        for role, content, name, tool_call_id, tool_calls in rows:
            data = {
                "role": role,
                "content": content or "",
                "name": name,
                "tool_call_id": tool_call_id,
            }
            if tool_calls:
                try:
                    data["tool_calls"] = json.loads(tool_calls)
                except json.JSONDecodeError as e:
                    raise StoreError(f"corrupt tool_calls in session {session_id!r}: {e}") from e
            messages.append(Message.from_dict(data))
        return messages

    def save(self, session_id: str, messages: list[Message]) -> None:
        now = _now()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, created_at, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (session_id, now, now),
            )
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            conn.executemany(
                """
                INSERT INTO messages
                    (session_id, idx, role, content, name, tool_call_id, tool_calls)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        session_id,
                        idx,
                        m.role,
                        m.content,
                        m.name,
                        m.tool_call_id,
                        json.dumps([tc.to_dict() for tc in m.tool_calls]) if m.tool_calls else None,
                    )
                    for idx, m in enumerate(messages)
                ],
            )

    def delete(self, session_id: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cur.rowcount > 0
