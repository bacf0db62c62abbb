from __future__ import annotations

import random
import re
import secrets
import sqlite3
import time
from typing import Callable


class MultiplayerServiceCore:
    """Shared room/session plumbing for host-plus-players game services.

    Every room has exactly one host row (``is_projector = 1``) that joins at
    creation time; ``MAX_PLAYERS`` counts only the non-host seats.
    """

    GAME_NAME = ""
    MAX_PLAYERS = 0
    STALE_SESSION_SECONDS = 12 * 60 * 60
    CREATE_SESSION_CODE_ATTEMPTS = 24
    SESSION_CODE_LENGTH = 4
    SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    AVATAR_COLORS = ("#f43f5e", "#8b5cf6", "#06b6d4", "#22c55e", "#f59e0b")

    SESSION_TABLE = ""
    PLAYER_TABLE = ""
    ERROR_CLASS = RuntimeError

    def __init__(self, *, db_path: str, change_feed=None):
        self.db_path = str(db_path)
        self.change_feed = change_feed

    def _raise_error(self, message: str, status_code: int = 400, details=None) -> None:
        raise self.ERROR_CLASS(message, status_code, details)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _publish(
        self,
        conn: sqlite3.Connection,
        *,
        session_code: str,
        table: str,
        event_type: str,
        row_key,
        row: dict | None = None,
    ) -> None:
        if self.change_feed is None:
            return
        self.change_feed.publish(
            conn,
            session_code=session_code,
            table=table,
            event_type=event_type,
            row_key=row_key,
            row=row,
        )

    def _cleanup_stale_sessions(self, max_age_seconds: int | None = None) -> int:
        if not self.SESSION_TABLE:
            return 0
        age = self.STALE_SESSION_SECONDS if max_age_seconds is None else int(max_age_seconds)
        cutoff_ts = int(time.time()) - age
        with self._connect() as conn:
            deleted = conn.execute(
                f"DELETE FROM {self.SESSION_TABLE} WHERE updated_at < ?",
                (cutoff_ts,),
            ).rowcount
            if self.change_feed is not None:
                self.change_feed.discard_orphans(conn, session_table=self.SESSION_TABLE)
        return deleted

    def _create_session_identity(
        self,
        *,
        player_name: str,
        insert_session: Callable[[sqlite3.Connection, str, int], None],
    ) -> tuple[str, sqlite3.Row]:
        self._cleanup_stale_sessions()
        display_name = self._require_player_name(player_name)
        player_id = self._new_player_id()
        now_ts = int(time.time())
        code = ""

        with self._connect() as conn:
            for _ in range(self.CREATE_SESSION_CODE_ATTEMPTS):
                code = self._new_session_code()
                try:
                    insert_session(conn, code, now_ts)
                    break
                except sqlite3.IntegrityError:
                    continue
            else:
                self._raise_error("Unable to create a session code right now.", 500)

            conn.execute(
                f"""
                INSERT INTO {self.PLAYER_TABLE}
                (player_id, session_code, name, is_projector, score, avatar_color, seat, joined_at)
                VALUES (?, ?, ?, 1, 0, ?, 0, ?)
                """,
                (player_id, code, display_name, self.AVATAR_COLORS[0], now_ts),
            )
            host = self._get_player(conn, player_id)
            self._publish(
                conn,
                session_code=code,
                table="players",
                event_type="insert",
                row_key=player_id,
                row=self._player_to_dict(host),
            )

        return code, host

    def _join_session_identity(
        self,
        *,
        session_code: str,
        player_name: str,
        player_id: str | None,
        waiting_status: str = "waiting",
        session_code_required_message: str = "Session code is required.",
        started_message: str = "This game already started. Try another code.",
        session_full_message: str | None = None,
        identity_conflict_message: str = "Unable to join with this player identity.",
    ) -> tuple[str, sqlite3.Row, sqlite3.Row, bool]:
        self._cleanup_stale_sessions()

        code = self._normalize_code(session_code)
        if not code:
            self._raise_error(session_code_required_message, 400)

        display_name = self._sanitize_player_name(player_name)
        requested_player_id = self._normalize_player_id(player_id)
        now_ts = int(time.time())

        full_message = (
            session_full_message
            or f"Game is full ({self.MAX_PLAYERS} players max)."
        )

        with self._connect() as conn:
            session = self._require_session(conn, code)

            if requested_player_id:
                existing = self._get_player(conn, requested_player_id)
                if existing and existing["session_code"] == code:
                    if display_name and existing["name"] != display_name:
                        conn.execute(
                            f"UPDATE {self.PLAYER_TABLE} SET name = ? WHERE player_id = ?",
                            (display_name, requested_player_id),
                        )
                        existing = self._get_player(conn, requested_player_id)
                        self._publish(
                            conn,
                            session_code=code,
                            table="players",
                            event_type="update",
                            row_key=requested_player_id,
                            row=self._player_to_dict(existing),
                        )
                    self._touch_session(conn, code, now_ts)
                    return code, existing, session, True

            if not display_name:
                self._raise_error("Player name is required.", 400)
            if session["status"] != waiting_status:
                self._raise_error(started_message, 409)

            current_players = self._list_players(conn, code)
            player_count = sum(1 for row in current_players if not row["is_projector"])
            if player_count >= self.MAX_PLAYERS:
                self._raise_error(full_message, 409)

            new_player_id = requested_player_id or self._new_player_id()
            seat = max([int(row["seat"]) for row in current_players] + [0]) + 1
            avatar_color = self.AVATAR_COLORS[(player_count + 1) % len(self.AVATAR_COLORS)]
            try:
                conn.execute(
                    f"""
                    INSERT INTO {self.PLAYER_TABLE}
                    (player_id, session_code, name, is_projector, score, avatar_color, seat, joined_at)
                    VALUES (?, ?, ?, 0, 0, ?, ?, ?)
                    """,
                    (new_player_id, code, display_name, avatar_color, seat, now_ts),
                )
            except sqlite3.IntegrityError as exc:
                raise self.ERROR_CLASS(identity_conflict_message, 409) from exc

            player = self._get_player(conn, new_player_id)
            self._publish(
                conn,
                session_code=code,
                table="players",
                event_type="insert",
                row_key=new_player_id,
                row=self._player_to_dict(player),
            )
            self._touch_session(conn, code, now_ts)

        return code, player, session, False

    def _touch_session(self, conn: sqlite3.Connection, session_code: str, now_ts: int | None = None) -> None:
        conn.execute(
            f"UPDATE {self.SESSION_TABLE} SET updated_at = ? WHERE code = ?",
            (int(now_ts or time.time()), session_code),
        )

    def _list_players(
        self, conn: sqlite3.Connection, session_code: str, *, include_host: bool = True
    ) -> list[sqlite3.Row]:
        query = f"""
            SELECT player_id, session_code, name, is_projector, score, avatar_color, seat, joined_at
            FROM {self.PLAYER_TABLE}
            WHERE session_code = ?
        """
        if not include_host:
            query += " AND is_projector = 0"
        query += " ORDER BY seat ASC, joined_at ASC"
        return conn.execute(query, (session_code,)).fetchall()

    def _get_player(self, conn: sqlite3.Connection, player_id: str) -> sqlite3.Row | None:
        return conn.execute(
            f"""
            SELECT player_id, session_code, name, is_projector, score, avatar_color, seat, joined_at
            FROM {self.PLAYER_TABLE}
            WHERE player_id = ?
            """,
            (player_id,),
        ).fetchone()

    def _require_session(
        self, conn: sqlite3.Connection, session_code: str
    ) -> sqlite3.Row:
        session = self._get_session(conn, session_code)
        if not session:
            self._raise_error("Game not found.", 404)
        return session

    def _require_host(
        self,
        conn: sqlite3.Connection,
        session: sqlite3.Row,
        player_id: str,
        forbidden_message: str,
    ) -> sqlite3.Row:
        player = self._get_player(conn, self._normalize_player_id(player_id))
        if not player or player["session_code"] != session["code"]:
            self._raise_error("Player not found in game.", 404)
        if not player["is_projector"]:
            self._raise_error(forbidden_message, 403)
        return player

    def _get_session(self, conn: sqlite3.Connection, session_code: str) -> sqlite3.Row | None:
        raise NotImplementedError

    @staticmethod
    def _player_to_dict(row: sqlite3.Row | None) -> dict:
        if row is None:
            return {}
        return {
            "id": row["player_id"],
            "session_code": row["session_code"],
            "name": row["name"],
            "is_projector": bool(row["is_projector"]),
            "score": int(row["score"] or 0),
            "avatar_color": row["avatar_color"],
            "seat": int(row["seat"] or 0),
            "joined_at": int(row["joined_at"] or 0),
        }

    def _require_player_name(self, player_name: str) -> str:
        display_name = self._sanitize_player_name(player_name)
        if not display_name:
            self._raise_error("Player name is required.", 400)
        return display_name

    @staticmethod
    def _sanitize_player_name(player_name: str) -> str:
        collapsed = re.sub(r"\s+", " ", str(player_name or "")).strip()
        return collapsed[:28]

    def _normalize_code(self, code: str) -> str:
        if not code:
            return ""
        # No truncation: "ABCDX" must not resolve to session "ABCD".
        return re.sub(r"[^A-Z0-9]", "", str(code).upper())

    @staticmethod
    def _normalize_player_id(player_id: str | None) -> str:
        if not player_id:
            return ""
        return re.sub(r"[^A-Za-z0-9_-]", "", str(player_id))[:48]

    @staticmethod
    def _new_player_id() -> str:
        return secrets.token_urlsafe(18).replace("-", "").replace("_", "")[:32]

    def _new_session_code(self) -> str:
        return "".join(
            random.choice(self.SESSION_CODE_ALPHABET)
            for _ in range(self.SESSION_CODE_LENGTH)
        )
