from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from uuid import uuid4

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database

_USER_COLUMNS = """
    id,
    external_id,
    email,
    access_token,
    access_token_expires_at,
    refresh_token,
    last_sync_at,
    created_at
"""


@dataclass(frozen=True)
class UserRecord:
    id: str
    external_id: str
    email: str
    access_token: str | None
    access_token_expires_at: str | None
    refresh_token: str
    last_sync_at: str | None
    created_at: str


class UserRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_or_update_from_auth(
        self,
        *,
        external_id: str,
        email: str,
        access_token: str | None,
        access_token_expires_at: str | None,
        refresh_token: str | None,
    ) -> UserRecord:
        normalized_external_id = external_id.strip()
        if not normalized_external_id:
            raise ValueError("external_id must not be empty")

        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            existing = conn.execute(
                "SELECT id, refresh_token FROM users WHERE external_id = ?",
                (normalized_external_id,),
            ).fetchone()
            if existing is None:
                user_id = f"usr_{uuid4().hex}"
                conn.execute(
                    """
                    INSERT INTO users (
                        id, external_id, email, access_token, access_token_expires_at,
                        refresh_token, last_sync_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (
                        user_id,
                        normalized_external_id,
                        email,
                        access_token,
                        access_token_expires_at,
                        refresh_token or "no_refresh_token_received",
                        now_iso,
                        now_iso,
                    ),
                )
            else:
                user_id = str(existing["id"])
                # Providers only hand out a refresh token on first consent; keep the stored one.
                stored_refresh = str(existing["refresh_token"])
                conn.execute(
                    """
                    UPDATE users
                    SET email = ?, access_token = ?, access_token_expires_at = ?,
                        refresh_token = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        email,
                        access_token,
                        access_token_expires_at,
                        refresh_token or stored_refresh,
                        now_iso,
                        user_id,
                    ),
                )
            row = _select_user(conn, "id", user_id)

        assert row is not None
        return _row_to_user(row)

    def get(self, user_id: str) -> UserRecord | None:
        with self._db.connection() as conn:
            row = _select_user(conn, "id", user_id)
        return _row_to_user(row) if row is not None else None

    def get_by_external_id(self, external_id: str) -> UserRecord | None:
        with self._db.connection() as conn:
            row = _select_user(conn, "external_id", external_id.strip())
        return _row_to_user(row) if row is not None else None

    def list_all(self) -> list[UserRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at ASC"
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_access_token(
        self,
        user_id: str,
        *,
        access_token: str,
        access_token_expires_at: str | None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE users
                SET access_token = ?, access_token_expires_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (access_token, access_token_expires_at, utc_now_iso(), user_id),
            )

    def clear_access_token(self, user_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE users
                SET access_token = NULL, access_token_expires_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (utc_now_iso(), user_id),
            )

    def mark_synced(self, user_id: str, *, synced_at: str | None = None) -> str:
        timestamp = synced_at or utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE users SET last_sync_at = ?, updated_at = ? WHERE id = ?",
                (timestamp, utc_now_iso(), user_id),
            )
        return timestamp


def _select_user(conn: sqlite3.Connection, column: str, value: str) -> sqlite3.Row | None:
    row: sqlite3.Row | None = conn.execute(
        f"SELECT {_USER_COLUMNS} FROM users WHERE {column} = ?",
        (value,),
    ).fetchone()
    return row


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        id=str(row["id"]),
        external_id=str(row["external_id"]),
        email=str(row["email"]),
        access_token=_as_optional_text(row["access_token"]),
        access_token_expires_at=_as_optional_text(row["access_token_expires_at"]),
        refresh_token=str(row["refresh_token"]),
        last_sync_at=_as_optional_text(row["last_sync_at"]),
        created_at=str(row["created_at"]),
    )


def _as_optional_text(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
