from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("subfeed.youtube_client")

DEFAULT_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_FEED_BASE_URL = "https://www.youtube.com/feeds/videos.xml"
DEFAULT_USER_AGENT = "subfeed/0.1"
MAX_PAGE_SIZE = 50
MAX_VIDEO_IDS_PER_CALL = 50
QUOTA_ERROR_REASONS: frozenset[str] = frozenset({"quotaExceeded", "dailyLimitExceeded"})


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, status_code: int, reason: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason

    @property
    def is_auth_error(self) -> bool:
        return self.status_code == 401

    @property
    def is_quota_error(self) -> bool:
        return self.status_code == 403 and self.reason in QUOTA_ERROR_REASONS


class YouTubeClient:
    """Thin HTTP adapter over the provider endpoints the sync pipeline consumes.

    Methods return decoded JSON objects (or raw feed text) and raise `ProviderError`
    for any non-2xx response or transport failure. Quota accounting is the caller's job.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        api_base_url: str = DEFAULT_API_BASE_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        feed_base_url: str = DEFAULT_FEED_BASE_URL,
        http_timeout_seconds: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._api_base_url = api_base_url.rstrip("/")
        self._token_url = token_url
        self._feed_base_url = feed_base_url
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))
        self._user_agent = user_agent

    def exchange_refresh_token(self, refresh_token: str) -> dict[str, Any]:
        if not self._client_id or not self._client_secret:
            raise ProviderError("OAuth client credentials are not configured.", status_code=0)
        body = urlencode(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        raw_body = _send(
            Request(
                self._token_url,
                data=body,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                    "User-Agent": self._user_agent,
                },
                method="POST",
            ),
            timeout_seconds=self._http_timeout_seconds,
            label="token exchange",
        )
        return _decode_json_object(raw_body)

    def list_subscriptions(
        self,
        access_token: str,
        *,
        page_token: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> dict[str, Any]:
        params: dict[str, str] = {
            "part": "snippet",
            "mine": "true",
            "maxResults": str(max(1, min(MAX_PAGE_SIZE, page_size))),
        }
        if page_token:
            params["pageToken"] = page_token
        return self._get_api_json("subscriptions", params, access_token=access_token)

    def search_channel_videos(
        self,
        access_token: str,
        *,
        channel_id: str,
        published_after: str,
        max_results: int = 10,
    ) -> dict[str, Any]:
        params = {
            "part": "snippet",
            "channelId": channel_id,
            "type": "video",
            "order": "date",
            "publishedAfter": published_after,
            "maxResults": str(max(1, min(MAX_PAGE_SIZE, max_results))),
        }
        return self._get_api_json("search", params, access_token=access_token)

    def list_video_content_details(
        self,
        access_token: str,
        video_ids: Sequence[str],
    ) -> dict[str, Any]:
        if len(video_ids) > MAX_VIDEO_IDS_PER_CALL:
            raise ValueError(f"At most {MAX_VIDEO_IDS_PER_CALL} video ids per call")
        params = {
            "part": "contentDetails",
            "id": ",".join(video_ids),
            "maxResults": str(max(1, len(video_ids))),
        }
        return self._get_api_json("videos", params, access_token=access_token)

    def fetch_channel_feed(self, channel_id: str) -> str:
        url = f"{self._feed_base_url}?{urlencode({'channel_id': channel_id})}"
        return _send(
            Request(
                url,
                headers={
                    "Accept": "application/atom+xml, application/xml;q=0.9, */*;q=0.1",
                    "User-Agent": self._user_agent,
                },
                method="GET",
            ),
            timeout_seconds=self._http_timeout_seconds,
            label=f"feed {channel_id}",
        )

    def _get_api_json(
        self,
        resource: str,
        params: dict[str, str],
        *,
        access_token: str,
    ) -> dict[str, Any]:
        url = f"{self._api_base_url}/{resource}?{urlencode(params)}"
        raw_body = _send(
            Request(
                url,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {access_token}",
                    "User-Agent": self._user_agent,
                },
                method="GET",
            ),
            timeout_seconds=self._http_timeout_seconds,
            label=resource,
        )
        return _decode_json_object(raw_body)


def _send(request: Request, *, timeout_seconds: float, label: str) -> str:
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            return response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        response_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        parsed = _decode_json_object(response_body)
        reason = _extract_error_reason(parsed)
        message = _extract_error_message(parsed) or str(exc)
        LOGGER.debug(
            "provider request failed label=%s status=%s reason=%s", label, exc.code, reason
        )
        raise ProviderError(
            f"Provider {label} request failed ({exc.code}): {message}",
            status_code=int(exc.code),
            reason=reason,
        ) from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise ProviderError(f"Provider {label} request failed: {exc}", status_code=0) from exc


def _decode_json_object(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return {}


def _extract_error_reason(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    errors = cast(dict[str, Any], error).get("errors")
    if not isinstance(errors, list):
        return None
    for item in cast(list[Any], errors):
        if isinstance(item, dict):
            reason = cast(dict[str, Any], item).get("reason")
            if isinstance(reason, str) and reason.strip():
                return reason.strip()
    return None


def _extract_error_message(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return f"{error}: {description.strip()}"
        return error.strip()
    if isinstance(error, dict):
        message = cast(dict[str, Any], error).get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)
    return {}


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return cast(list[Any], value)
    return []
