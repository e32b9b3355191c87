from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.database import Database
from backend.app.repositories.user_repository import UserRecord, UserRepository


@pytest.fixture(autouse=True)
def _subfeed_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("SUBFEED_OAUTH_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("SUBFEED_OAUTH_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("SUBFEED_ENABLE_SCHEDULER", "0")


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "subfeed.db")
    db.initialize()
    return db


@pytest.fixture
def user_repository(database: Database) -> UserRepository:
    return UserRepository(database)


@pytest.fixture
def make_user(user_repository: UserRepository) -> Callable[..., UserRecord]:
    def _make_user(
        external_id: str = "google-sub-1",
        *,
        refresh_token: str | None = "refresh-abc",
        access_token: str | None = "access-abc",
        expires_in_seconds: int = 3_600,
    ) -> UserRecord:
        expires_at = (datetime.now(UTC) + timedelta(seconds=expires_in_seconds)).isoformat()
        return user_repository.create_or_update_from_auth(
            external_id=external_id,
            email=f"{external_id}@example.com",
            access_token=access_token,
            access_token_expires_at=expires_at if access_token else None,
            refresh_token=refresh_token,
        )

    return _make_user


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("SUBFEED_DATA_DIR", str(data_dir))
    monkeypatch.setenv("SUBFEED_TELEMETRY_SINK", "none")
    monkeypatch.setenv("SUBFEED_INTER_USER_DELAY_SECONDS", "0")
    monkeypatch.setenv("SUBFEED_SUBSCRIPTION_PAGE_DELAY_SECONDS", "0")
    monkeypatch.setenv("SUBFEED_FEED_BATCH_DELAY_SECONDS", "0")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
