from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from backend.app.repositories.common import parse_iso_datetime
from backend.app.repositories.user_repository import UserRecord, UserRepository
from backend.app.services.credential_refresher import (
    CredentialRefresher,
    is_placeholder_refresh_token,
)
from backend.app.services.youtube_client import ProviderError


class _FakeTokenClient:
    def __init__(
        self,
        *,
        payload: dict[str, Any] | None = None,
        error: ProviderError | None = None,
    ) -> None:
        self.payload = payload if payload is not None else {
            "access_token": "fresh-token",
            "expires_in": 3600,
            "token_type": "Bearer",
        }
        self.error = error
        self.refresh_tokens: list[str] = []

    def exchange_refresh_token(self, refresh_token: str) -> dict[str, Any]:
        self.refresh_tokens.append(refresh_token)
        if self.error is not None:
            raise self.error
        return self.payload


class _BlockingTokenClient:
    def __init__(self) -> None:
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()

    def exchange_refresh_token(self, refresh_token: str) -> dict[str, Any]:
        _ = refresh_token
        self.calls += 1
        self.entered.set()
        self.release.wait(timeout=5)
        return {"access_token": "fresh-token", "expires_in": 3600}


def test_fresh_credential_is_returned_without_provider_call(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user(access_token="still-good", expires_in_seconds=600)
    token_client = _FakeTokenClient()
    refresher = CredentialRefresher(user_repository=user_repository, token_client=token_client)

    assert refresher.get_valid_access_credential(user) == "still-good"
    assert token_client.refresh_tokens == []


def test_credential_inside_safety_margin_is_refreshed_and_persisted(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    now = datetime(2025, 3, 1, 12, tzinfo=UTC)
    user = make_user(access_token="about-to-expire", expires_in_seconds=30)
    token_client = _FakeTokenClient(payload={"access_token": "fresh-token"})
    refresher = CredentialRefresher(
        user_repository=user_repository,
        token_client=token_client,
        clock=lambda: now,
    )
    # Pin the stored expiry relative to the fixed clock.
    user_repository.update_access_token(
        user.id,
        access_token="about-to-expire",
        access_token_expires_at=(now + timedelta(seconds=45)).isoformat(),
    )

    assert refresher.get_valid_access_credential(user) == "fresh-token"
    assert token_client.refresh_tokens == ["refresh-abc"]

    stored = user_repository.get(user.id)
    assert stored is not None
    assert stored.access_token == "fresh-token"
    assert parse_iso_datetime(stored.access_token_expires_at) == now + timedelta(seconds=3600)


def test_concurrent_callers_share_a_single_refresh(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user(access_token="expired", expires_in_seconds=-10)
    token_client = _BlockingTokenClient()
    refresher = CredentialRefresher(user_repository=user_repository, token_client=token_client)
    results: list[str | None] = []

    def _call() -> None:
        results.append(refresher.get_valid_access_credential(user))

    first = threading.Thread(target=_call)
    first.start()
    assert token_client.entered.wait(timeout=5)

    second = threading.Thread(target=_call)
    second.start()
    time.sleep(0.1)
    token_client.release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert token_client.calls == 1
    assert results == ["fresh-token", "fresh-token"]


@pytest.mark.parametrize(
    "refresh_token",
    ["placeholder", "created_via_sync_no_refresh_token", "no_refresh_token_received"],
)
def test_placeholder_refresh_token_needs_reauth_without_provider_call(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
    refresh_token: str,
) -> None:
    user = make_user(refresh_token=refresh_token, expires_in_seconds=-10)
    token_client = _FakeTokenClient()
    refresher = CredentialRefresher(user_repository=user_repository, token_client=token_client)

    assert refresher.get_valid_access_credential(user) is None
    assert token_client.refresh_tokens == []

    stored = user_repository.get(user.id)
    assert stored is not None
    assert stored.access_token is None
    assert stored.access_token_expires_at is None


def test_missing_refresh_token_is_stored_as_placeholder(
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user(refresh_token=None)

    assert user.refresh_token == "no_refresh_token_received"
    assert is_placeholder_refresh_token(user.refresh_token) is True
    assert is_placeholder_refresh_token("   ") is True
    assert is_placeholder_refresh_token("1//real-token") is False


def test_rejected_refresh_clears_cached_credential(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user(access_token="expired", expires_in_seconds=-10)
    token_client = _FakeTokenClient(
        error=ProviderError("invalid_grant: Token has been revoked", status_code=400)
    )
    refresher = CredentialRefresher(user_repository=user_repository, token_client=token_client)

    assert refresher.refresh(user) is None
    assert token_client.refresh_tokens == ["refresh-abc"]
    stored = user_repository.get(user.id)
    assert stored is not None
    assert stored.access_token is None


def test_refresh_payload_without_access_token_needs_reauth(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user(access_token="expired", expires_in_seconds=-10)
    token_client = _FakeTokenClient(payload={"token_type": "Bearer"})
    refresher = CredentialRefresher(user_repository=user_repository, token_client=token_client)

    assert refresher.get_valid_access_credential(user) is None


def test_forced_refresh_ignores_a_fresh_cached_credential(
    user_repository: UserRepository,
    make_user: Callable[..., UserRecord],
) -> None:
    user = make_user(access_token="still-good", expires_in_seconds=600)
    token_client = _FakeTokenClient()
    refresher = CredentialRefresher(user_repository=user_repository, token_client=token_client)

    assert refresher.refresh(user) == "fresh-token"
    assert token_client.refresh_tokens == ["refresh-abc"]
