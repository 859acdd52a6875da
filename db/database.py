import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from db.models import SCHEMA_SQL


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _summary_from_row(row: dict | None) -> dict | None:
    if row is None:
        return None
    row["key_points"] = json.loads(row["key_points"] or "[]")
    row["action_items"] = json.loads(row["action_items"] or "[]")
    return row


class Database:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # One connection per thread; finalize work runs in executor threads.
        self._local = threading.local()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def _init_schema(self):
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._get_conn()
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor

    def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = self._get_conn().execute(sql, params)
        row = cursor.fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = self._get_conn().execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # -- Sessions --

    def insert_session(self, user_id: str, title: str | None, started_at: str) -> dict:
        session_id = str(uuid.uuid4())
        self.execute(
            "INSERT INTO sessions (id, user_id, title, started_at, state, updated_at) "
            "VALUES (?, ?, ?, ?, 'recording', ?)",
            (session_id, user_id, title, started_at, started_at),
        )
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> dict | None:
        return self.fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))

    def list_sessions(self, user_id: str | None = None) -> list[dict]:
        if user_id:
            return self.fetchall(
                "SELECT * FROM sessions WHERE user_id = ? ORDER BY started_at DESC", (user_id,)
            )
        return self.fetchall("SELECT * FROM sessions ORDER BY started_at DESC")

    def list_sessions_in_state(self, state: str) -> list[dict]:
        return self.fetchall(
            "SELECT * FROM sessions WHERE state = ? ORDER BY started_at", (state,)
        )

    def transition_session(self, session_id: str, from_state: str, to_state: str,
                           **fields) -> dict | None:
        """Move a session from `from_state` to `to_state` in a single statement.

        Returns the updated row, or None when the session was not in
        `from_state` anymore (another writer got there first).
        """
        fields["state"] = to_state
        fields["updated_at"] = utcnow()
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        values = list(fields.values()) + [session_id, from_state]
        cursor = self.execute(
            f"UPDATE sessions SET {set_clause} WHERE id = ? AND state = ?", tuple(values)
        )
        if cursor.rowcount == 0:
            return None
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> bool:
        cursor = self.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cursor.rowcount > 0

    # -- Transcript chunks --

    def upsert_chunk(self, session_id: str, chunk_index: int, speaker: str | None,
                     timestamp: str) -> dict:
        self.execute(
            "INSERT INTO transcript_chunks (id, session_id, chunk_index, text, speaker, timestamp) "
            "VALUES (?, ?, ?, '', ?, ?) "
            "ON CONFLICT (session_id, chunk_index) DO UPDATE SET "
            "speaker = excluded.speaker, timestamp = excluded.timestamp",
            (str(uuid.uuid4()), session_id, chunk_index, speaker, timestamp),
        )
        return self.get_chunk(session_id, chunk_index)

    def get_chunk(self, session_id: str, chunk_index: int) -> dict | None:
        return self.fetchone(
            "SELECT * FROM transcript_chunks WHERE session_id = ? AND chunk_index = ?",
            (session_id, chunk_index),
        )

    def list_chunks(self, session_id: str) -> list[dict]:
        return self.fetchall(
            "SELECT * FROM transcript_chunks WHERE session_id = ? ORDER BY chunk_index",
            (session_id,),
        )

    def update_chunk_text(self, chunk_id: str, text: str) -> None:
        self.execute("UPDATE transcript_chunks SET text = ? WHERE id = ?", (text, chunk_id))

    # -- Summaries --

    def insert_summary(self, session_id: str, content: str, key_points: list[str],
                       action_items: list[str]) -> dict:
        """Create the session's summary; an existing summary is returned untouched."""
        now = utcnow()
        self.execute(
            "INSERT INTO summaries (id, session_id, content, key_points, action_items, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT (session_id) DO NOTHING",
            (
                str(uuid.uuid4()),
                session_id,
                content,
                json.dumps(key_points, ensure_ascii=False),
                json.dumps(action_items, ensure_ascii=False),
                now,
            ),
        )
        return self.get_summary(session_id)

    def get_summary(self, session_id: str) -> dict | None:
        return _summary_from_row(
            self.fetchone("SELECT * FROM summaries WHERE session_id = ?", (session_id,))
        )
