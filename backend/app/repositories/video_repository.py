from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass

from backend.app.repositories.common import PersistenceError, utc_now_iso
from backend.app.repositories.database import Database

VIDEO_STATUS_ACTIVE = "active"
VIDEO_STATUS_WATCHED = "watched"
VIDEO_STATUS_SKIPPED = "skipped"
DISMISSED_VIDEO_STATUSES: frozenset[str] = frozenset({VIDEO_STATUS_WATCHED, VIDEO_STATUS_SKIPPED})


@dataclass(frozen=True)
class VideoRecord:
    user_id: str
    video_id: str
    channel_id: str
    channel_name: str
    title: str
    thumbnail_url: str | None
    published_at: str
    duration: str | None


@dataclass(frozen=True)
class StoredVideo:
    record: VideoRecord
    status: str
    dismissed_at: str | None
    created_at: str


class VideoRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert_ignore_duplicates(self, records: Sequence[VideoRecord]) -> list[VideoRecord]:
        """Insert records keyed on (user_id, video_id); existing rows win and are left untouched.

        Returns only the records that produced a new row. The whole call is one transaction,
        so a store error leaves none of the records written.
        """
        if not records:
            return []

        inserted: list[VideoRecord] = []
        now_iso = utc_now_iso()
        try:
            with self._db.connection() as conn:
                for record in records:
                    cursor = conn.execute(
                        """
                        INSERT INTO videos (
                            user_id, video_id, channel_id, channel_name, title,
                            thumbnail_url, published_at, duration, status, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, video_id) DO NOTHING
                        """,
                        (
                            record.user_id,
                            record.video_id,
                            record.channel_id,
                            record.channel_name,
                            record.title,
                            record.thumbnail_url,
                            record.published_at,
                            record.duration,
                            VIDEO_STATUS_ACTIVE,
                            now_iso,
                        ),
                    )
                    if cursor.rowcount > 0:
                        inserted.append(record)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Video batch insert failed: {exc}") from exc
        return inserted

    def list_feed(self, user_id: str, *, limit: int = 50, offset: int = 0) -> list[StoredVideo]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    user_id, video_id, channel_id, channel_name, title, thumbnail_url,
                    published_at, duration, status, dismissed_at, created_at
                FROM videos
                WHERE user_id = ? AND status = ?
                ORDER BY published_at DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, VIDEO_STATUS_ACTIVE, max(1, limit), max(0, offset)),
            ).fetchall()
        return [_row_to_stored_video(row) for row in rows]

    def count_active(self, user_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM videos WHERE user_id = ? AND status = ?",
                (user_id, VIDEO_STATUS_ACTIVE),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def count_all(self, user_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM videos WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def dismiss(self, user_id: str, video_id: str, *, status: str) -> bool:
        if status not in DISMISSED_VIDEO_STATUSES:
            raise ValueError(f"Unsupported dismissal status: {status}")
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE videos
                SET status = ?, dismissed_at = ?
                WHERE user_id = ? AND video_id = ? AND status = ?
                """,
                (status, utc_now_iso(), user_id, video_id, VIDEO_STATUS_ACTIVE),
            )
        return cursor.rowcount > 0


def _row_to_stored_video(row: sqlite3.Row) -> StoredVideo:
    return StoredVideo(
        record=VideoRecord(
            user_id=str(row["user_id"]),
            video_id=str(row["video_id"]),
            channel_id=str(row["channel_id"]),
            channel_name=str(row["channel_name"]),
            title=str(row["title"]),
            thumbnail_url=str(row["thumbnail_url"]) if row["thumbnail_url"] is not None else None,
            published_at=str(row["published_at"]),
            duration=str(row["duration"]) if row["duration"] is not None else None,
        ),
        status=str(row["status"]),
        dismissed_at=str(row["dismissed_at"]) if row["dismissed_at"] is not None else None,
        created_at=str(row["created_at"]),
    )
