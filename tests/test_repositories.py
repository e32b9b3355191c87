from __future__ import annotations

from collections.abc import Callable

import pytest

from backend.app.repositories.common import PersistenceError, parse_iso_datetime
from backend.app.repositories.database import Database
from backend.app.repositories.quota_repository import QuotaRepository, StoredQuotaState
from backend.app.repositories.user_repository import UserRecord, UserRepository
from backend.app.repositories.video_repository import (
    VIDEO_STATUS_SKIPPED,
    VIDEO_STATUS_WATCHED,
    VideoRecord,
    VideoRepository,
)


def _video(user_id: str, video_id: str, *, published_at: str) -> VideoRecord:
    return VideoRecord(
        user_id=user_id,
        video_id=video_id,
        channel_id="UC_1",
        channel_name="Channel 1",
        title=f"Video {video_id}",
        thumbnail_url=f"https://img.youtube.com/vi/{video_id}/mqdefault.jpg",
        published_at=published_at,
        duration="12:34",
    )


def test_user_repository_creates_then_updates_by_external_id(
    user_repository: UserRepository,
) -> None:
    created = user_repository.create_or_update_from_auth(
        external_id="google-sub-1",
        email="first@example.com",
        access_token="access-1",
        access_token_expires_at="2025-03-01T13:00:00+00:00",
        refresh_token="refresh-1",
    )
    updated = user_repository.create_or_update_from_auth(
        external_id="google-sub-1",
        email="second@example.com",
        access_token="access-2",
        access_token_expires_at="2025-03-01T14:00:00+00:00",
        refresh_token=None,
    )

    assert updated.id == created.id
    assert updated.email == "second@example.com"
    assert updated.access_token == "access-2"
    # A sign-in without a new refresh token keeps the stored one.
    assert updated.refresh_token == "refresh-1"
    assert updated.last_sync_at is None
    assert user_repository.get_by_external_id(" google-sub-1 ") == updated
    assert [user.id for user in user_repository.list_all()] == [created.id]


def test_user_repository_rejects_blank_external_id(user_repository: UserRepository) -> None:
    with pytest.raises(ValueError):
        user_repository.create_or_update_from_auth(
            external_id="  ",
            email="someone@example.com",
            access_token=None,
            access_token_expires_at=None,
            refresh_token=None,
        )


def test_user_repository_token_updates_and_sync_marker(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user()

    user_repository.update_access_token(
        user.id, access_token="access-new", access_token_expires_at="2030-01-01T00:00:00+00:00"
    )
    refreshed = user_repository.get(user.id)
    assert refreshed is not None
    assert refreshed.access_token == "access-new"

    user_repository.clear_access_token(user.id)
    cleared = user_repository.get(user.id)
    assert cleared is not None
    assert cleared.access_token is None
    assert cleared.access_token_expires_at is None
    assert cleared.refresh_token == "refresh-abc"

    synced_at = user_repository.mark_synced(user.id)
    marked = user_repository.get(user.id)
    assert marked is not None
    assert marked.last_sync_at == synced_at
    assert parse_iso_datetime(synced_at) is not None
    assert user_repository.get("usr_missing") is None


def test_video_repository_ignores_duplicates_and_lists_newest_first(
    database: Database,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user()
    repository = VideoRepository(database)

    inserted = repository.insert_ignore_duplicates(
        [
            _video(user.id, "older", published_at="2025-03-01T08:00:00+00:00"),
            _video(user.id, "newer", published_at="2025-03-01T10:00:00+00:00"),
        ]
    )
    again = repository.insert_ignore_duplicates(
        [
            _video(user.id, "newer", published_at="2025-03-01T10:00:00+00:00"),
            _video(user.id, "newest", published_at="2025-03-01T11:00:00+00:00"),
        ]
    )

    assert [record.video_id for record in inserted] == ["older", "newer"]
    assert [record.video_id for record in again] == ["newest"]
    feed = repository.list_feed(user.id)
    assert [video.record.video_id for video in feed] == ["newest", "newer", "older"]
    assert feed[0].status == "active"
    assert feed[0].dismissed_at is None
    assert [video.record.video_id for video in repository.list_feed(user.id, limit=1, offset=1)] == [
        "newer"
    ]
    assert repository.count_active(user.id) == 3


def test_video_rows_are_scoped_per_user(
    database: Database,
    make_user: Callable[..., UserRecord],
) -> None:
    first = make_user("google-sub-1")
    second = make_user("google-sub-2")
    repository = VideoRepository(database)

    repository.insert_ignore_duplicates(
        [_video(first.id, "shared", published_at="2025-03-01T08:00:00+00:00")]
    )
    inserted = repository.insert_ignore_duplicates(
        [_video(second.id, "shared", published_at="2025-03-01T08:00:00+00:00")]
    )

    assert len(inserted) == 1
    assert repository.count_all(first.id) == 1
    assert repository.count_all(second.id) == 1


def test_dismissed_videos_leave_the_feed_and_stay_dismissed(
    database: Database,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user()
    repository = VideoRepository(database)
    repository.insert_ignore_duplicates(
        [
            _video(user.id, "watched", published_at="2025-03-01T08:00:00+00:00"),
            _video(user.id, "skipped", published_at="2025-03-01T09:00:00+00:00"),
            _video(user.id, "kept", published_at="2025-03-01T10:00:00+00:00"),
        ]
    )

    assert repository.dismiss(user.id, "watched", status=VIDEO_STATUS_WATCHED) is True
    assert repository.dismiss(user.id, "skipped", status=VIDEO_STATUS_SKIPPED) is True
    assert repository.dismiss(user.id, "watched", status=VIDEO_STATUS_SKIPPED) is False
    assert repository.dismiss(user.id, "unknown", status=VIDEO_STATUS_WATCHED) is False

    reinserted = repository.insert_ignore_duplicates(
        [_video(user.id, "watched", published_at="2025-03-01T08:00:00+00:00")]
    )

    assert reinserted == []
    assert [video.record.video_id for video in repository.list_feed(user.id)] == ["kept"]
    assert repository.count_active(user.id) == 1
    assert repository.count_all(user.id) == 3


def test_dismiss_rejects_unknown_status(
    database: Database,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user()

    with pytest.raises(ValueError):
        VideoRepository(database).dismiss(user.id, "any", status="active")


def test_failed_batch_insert_writes_nothing(
    database: Database,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user()
    repository = VideoRepository(database)

    with pytest.raises(PersistenceError):
        repository.insert_ignore_duplicates(
            [
                _video(user.id, "valid", published_at="2025-03-01T08:00:00+00:00"),
                _video("usr_unknown", "orphan", published_at="2025-03-01T08:00:00+00:00"),
            ]
        )

    assert repository.count_all(user.id) == 0


def test_quota_repository_round_trips_state(database: Database) -> None:
    repository = QuotaRepository(database)
    assert repository.load() is None

    repository.save(
        StoredQuotaState(
            used=12,
            daily_limit=10_000,
            reset_at="2025-03-02T00:00:00+00:00",
            operations=[{"kind": "search", "cost": 1, "timestamp": "2025-03-01T10:00:00+00:00"}],
        )
    )
    repository.save(
        StoredQuotaState(
            used=13,
            daily_limit=10_000,
            reset_at="2025-03-02T00:00:00+00:00",
            operations=[],
        )
    )

    loaded = repository.load()
    assert loaded == StoredQuotaState(
        used=13,
        daily_limit=10_000,
        reset_at="2025-03-02T00:00:00+00:00",
        operations=[],
    )
