from __future__ import annotations

import json
import sqlite3
import time

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_TYPES = (EVENT_INSERT, EVENT_UPDATE, EVENT_DELETE)


class ChangeFeed:
    """Per-session change log that clients poll with a cursor.

    Events are written on the caller's connection so they commit or roll back
    together with the rows they describe. Delivery is at-least-once: a client
    that re-polls with an old cursor simply sees the same events again.
    """

    MAX_EVENTS_PER_SESSION = 100

    def __init__(self, *, db_path: str):
        self.db_path = str(db_path)
        self.ensure_schema()

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_code TEXT NOT NULL,
                    table_name TEXT NOT NULL,
                    event_type TEXT NOT NULL CHECK (event_type IN ('insert', 'update', 'delete')),
                    row_key TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pq_events_session ON pq_events(session_code, id)"
            )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def publish(
        self,
        conn: sqlite3.Connection,
        *,
        session_code: str,
        table: str,
        event_type: str,
        row_key,
        row: dict | None = None,
    ) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown change event type: {event_type}")

        conn.execute(
            """
            INSERT INTO pq_events
            (session_code, table_name, event_type, row_key, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session_code,
                table,
                event_type,
                str(row_key),
                json.dumps(row or {}, ensure_ascii=False, default=str),
                int(time.time() * 1000),
            ),
        )
        conn.execute(
            """
            DELETE FROM pq_events
            WHERE session_code = ?
              AND id NOT IN (
                  SELECT id FROM pq_events
                  WHERE session_code = ?
                  ORDER BY id DESC
                  LIMIT ?
              )
            """,
            (session_code, session_code, self.MAX_EVENTS_PER_SESSION),
        )

    def discard_orphans(self, conn: sqlite3.Connection, *, session_table: str) -> None:
        conn.execute(
            f"DELETE FROM pq_events WHERE session_code NOT IN (SELECT code FROM {session_table})"
        )

    def poll(
        self,
        session_code: str,
        *,
        since: int = 0,
        tables: list[str] | None = None,
    ) -> dict:
        try:
            cursor = max(int(since or 0), 0)
        except (TypeError, ValueError):
            cursor = 0

        query = """
            SELECT id, table_name, event_type, row_key, payload, created_at
            FROM pq_events
            WHERE session_code = ? AND id > ?
        """
        params: list = [session_code, cursor]
        if tables:
            placeholders = ", ".join("?" for _ in tables)
            query += f" AND table_name IN ({placeholders})"
            params.extend(tables)
        query += " ORDER BY id ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        events = []
        for row in rows:
            try:
                payload = json.loads(row["payload"])
            except (json.JSONDecodeError, TypeError):
                payload = {}
            events.append(
                {
                    "id": int(row["id"]),
                    "table": row["table_name"],
                    "type": row["event_type"],
                    "key": row["row_key"],
                    "row": payload,
                    "created_at": int(row["created_at"]),
                }
            )

        next_cursor = events[-1]["id"] if events else cursor
        return {"events": events, "cursor": next_cursor}
