from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Any, Protocol

from backend.app.repositories.common import parse_iso_datetime
from backend.app.repositories.user_repository import UserRecord, UserRepository
from backend.app.services.youtube_client import ProviderError

LOGGER = logging.getLogger("subfeed.credentials")

PLACEHOLDER_REFRESH_TOKENS: frozenset[str] = frozenset(
    {
        "placeholder",
        "created_via_sync_no_refresh_token",
        "no_refresh_token_received",
    }
)
DEFAULT_SAFETY_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3_600


class TokenExchangeClient(Protocol):
    def exchange_refresh_token(self, refresh_token: str) -> dict[str, Any]:
        ...


def is_placeholder_refresh_token(refresh_token: str | None) -> bool:
    if refresh_token is None:
        return True
    normalized = refresh_token.strip()
    return not normalized or normalized in PLACEHOLDER_REFRESH_TOKENS


class CredentialRefresher:
    """Hands out usable access tokens, refreshing them at most once at a time per user.

    `None` from either public method means the user has to sign in again: the refresh
    token is a placeholder, or the provider (or the network) refused the exchange.
    Concurrent callers for the same user share one in-flight exchange.
    """

    def __init__(
        self,
        *,
        user_repository: UserRepository,
        token_client: TokenExchangeClient,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._user_repository = user_repository
        self._token_client = token_client
        self._safety_margin = timedelta(seconds=max(0, safety_margin_seconds))
        self._clock = clock if clock is not None else _utc_now
        self._guard = Lock()
        self._in_flight: dict[str, Future[str | None]] = {}

    def get_valid_access_credential(self, user: UserRecord) -> str | None:
        current = self._user_repository.get(user.id) or user
        if self._is_fresh(current):
            return current.access_token
        return self._refresh_shared(current, force=False)

    def refresh(self, user: UserRecord) -> str | None:
        return self._refresh_shared(user, force=True)

    def _refresh_shared(self, user: UserRecord, *, force: bool) -> str | None:
        with self._guard:
            in_flight = self._in_flight.get(user.id)
            if in_flight is None:
                future: Future[str | None] = Future()
                self._in_flight[user.id] = future

        if in_flight is not None:
            LOGGER.debug("awaiting in-flight credential refresh user_id=%s", user.id)
            return in_flight.result()

        try:
            if not force:
                # Another caller may have finished a refresh between our read and our turn.
                latest = self._user_repository.get(user.id) or user
                if self._is_fresh(latest):
                    future.set_result(latest.access_token)
                    return latest.access_token
            token = self._perform_refresh(user)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(token)
            return token
        finally:
            with self._guard:
                self._in_flight.pop(user.id, None)

    def _perform_refresh(self, user: UserRecord) -> str | None:
        if is_placeholder_refresh_token(user.refresh_token):
            LOGGER.warning(
                "credential refresh skipped; refresh token missing or placeholder user_id=%s",
                user.id,
            )
            self._user_repository.clear_access_token(user.id)
            return None

        try:
            payload = self._token_client.exchange_refresh_token(user.refresh_token)
        except ProviderError as exc:
            LOGGER.warning(
                "credential refresh rejected user_id=%s status=%s",
                user.id,
                exc.status_code,
                exc_info=True,
            )
            self._user_repository.clear_access_token(user.id)
            return None

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            LOGGER.warning("credential refresh returned no access token user_id=%s", user.id)
            self._user_repository.clear_access_token(user.id)
            return None

        expires_in = _coerce_positive_int(payload.get("expires_in")) or DEFAULT_EXPIRES_IN_SECONDS
        expires_at = self._clock() + timedelta(seconds=expires_in)
        self._user_repository.update_access_token(
            user.id,
            access_token=access_token,
            access_token_expires_at=expires_at.isoformat(),
        )
        LOGGER.info(
            "credential refreshed user_id=%s expires_at=%s", user.id, expires_at.isoformat()
        )
        return access_token

    def _is_fresh(self, user: UserRecord) -> bool:
        if not user.access_token:
            return False
        expires_at = parse_iso_datetime(user.access_token_expires_at)
        if expires_at is None:
            return False
        return self._clock() + self._safety_margin < expires_at


def _coerce_positive_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int):
        return raw_value if raw_value > 0 else None
    if isinstance(raw_value, str) and raw_value.strip().isdigit():
        value = int(raw_value.strip())
        return value if value > 0 else None
    return None


def _utc_now() -> datetime:
    return datetime.now(UTC)
