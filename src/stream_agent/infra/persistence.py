"""Turn persistence backed by a local SQLite database."""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from stream_agent.types import TurnRecord


class TurnLogger(Protocol):
    async def log_turn(self, record: TurnRecord) -> None: ...


class SqliteTurnLog:
    """Writes one session row and a user/assistant event pair per turn."""

    def __init__(self, sqlite_path: str | Path = "stream_agent.db") -> None:
        self.db_file = Path(sqlite_path)
        _ensure_schema(self.db_file)

    async def log_turn(self, record: TurnRecord) -> None:
        await asyncio.to_thread(self._write, record)

    def list_events(self, session_id: str) -> list[tuple[str, str, str]]:
        """Return `(role, content, correlation_id)` rows in insertion order."""
        with sqlite3.connect(self.db_file) as conn:
            cur = conn.execute(
                "SELECT role, content, correlation_id FROM chat_events WHERE session_id = ? ORDER BY rowid",
                (session_id,),
            )
            return [tuple(row) for row in cur.fetchall()]

    def _write(self, record: TurnRecord) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_file) as conn:
            conn.execute(
                "INSERT INTO chat_sessions (id, created_at, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at",
                (record.session_id, now, now),
            )
            conn.executemany(
                "INSERT INTO chat_events (id, session_id, role, content, correlation_id, message_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (str(uuid.uuid4()), record.session_id, "user", record.user_message,
                     record.correlation_id, None, now),
                    (str(uuid.uuid4()), record.session_id, "assistant", record.assistant_transcript,
                     record.correlation_id, record.message_id or None, now),
                ],
            )
            conn.commit()


def _ensure_schema(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS chat_sessions "
            "(id TEXT PRIMARY KEY, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE TABLE IF NOT EXISTS chat_events ("
            "id TEXT PRIMARY KEY, session_id TEXT NOT NULL, role TEXT NOT NULL, content TEXT NOT NULL, "
            "correlation_id TEXT, message_id TEXT, created_at TEXT NOT NULL)"
        )
        conn.commit()
