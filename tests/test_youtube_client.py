from __future__ import annotations

import io
import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit
from urllib.request import Request

import pytest

from backend.app.services import youtube_client as youtube_client_module
from backend.app.services.youtube_client import ProviderError, YouTubeClient


class _FakeResponse:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


class _RecordingUrlopen:
    def __init__(self, outcome: str | Exception) -> None:
        self._outcome = outcome
        self.requests: list[Request] = []
        self.timeouts: list[float] = []

    def __call__(self, request: Request, timeout: float) -> _FakeResponse:
        self.requests.append(request)
        self.timeouts.append(timeout)
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return _FakeResponse(self._outcome)


def _client(**overrides: Any) -> YouTubeClient:
    options: dict[str, Any] = {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "api_base_url": "https://api.example.test/youtube/v3/",
        "token_url": "https://oauth.example.test/token",
        "feed_base_url": "https://feeds.example.test/videos.xml",
    }
    options.update(overrides)
    return YouTubeClient(**options)


def _http_error(code: int, payload: dict[str, Any]) -> HTTPError:
    return HTTPError(
        "https://api.example.test",
        code,
        "error",
        None,  # type: ignore[arg-type]
        io.BytesIO(json.dumps(payload).encode("utf-8")),
    )


def _query(request: Request) -> dict[str, list[str]]:
    return parse_qs(urlsplit(request.full_url).query)


def test_list_subscriptions_sends_bearer_and_paging(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen(json.dumps({"items": [], "nextPageToken": "next"}))
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    payload = _client(http_timeout_seconds=15).list_subscriptions(
        "access-1", page_token="page-2", page_size=500
    )

    assert payload == {"items": [], "nextPageToken": "next"}
    request = fake.requests[0]
    assert request.full_url.startswith("https://api.example.test/youtube/v3/subscriptions?")
    assert request.get_header("Authorization") == "Bearer access-1"
    query = _query(request)
    assert query["mine"] == ["true"]
    assert query["pageToken"] == ["page-2"]
    assert query["maxResults"] == ["50"]
    assert fake.timeouts == [15.0]


def test_search_channel_videos_bounds_by_publish_time(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen(json.dumps({"items": []}))
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    _client().search_channel_videos(
        "access-1", channel_id="UC_1", published_after="2025-03-01T00:00:00Z"
    )

    query = _query(fake.requests[0])
    assert query["channelId"] == ["UC_1"]
    assert query["publishedAfter"] == ["2025-03-01T00:00:00Z"]
    assert query["type"] == ["video"]
    assert query["order"] == ["date"]
    assert query["maxResults"] == ["10"]


def test_list_video_content_details_rejects_oversized_batches() -> None:
    with pytest.raises(ValueError):
        _client().list_video_content_details("access-1", [f"v{index}" for index in range(51)])


def test_list_video_content_details_joins_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen(json.dumps({"items": []}))
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    _client().list_video_content_details("access-1", ["a", "b", "c"])

    query = _query(fake.requests[0])
    assert query["id"] == ["a,b,c"]
    assert query["part"] == ["contentDetails"]


def test_exchange_refresh_token_posts_form(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen(json.dumps({"access_token": "fresh", "expires_in": 3599}))
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    payload = _client().exchange_refresh_token("refresh-1")

    assert payload["access_token"] == "fresh"
    request = fake.requests[0]
    assert request.get_method() == "POST"
    assert request.full_url == "https://oauth.example.test/token"
    body = parse_qs((request.data or b"").decode("utf-8"))  # type: ignore[union-attr]
    assert body["grant_type"] == ["refresh_token"]
    assert body["refresh_token"] == ["refresh-1"]
    assert body["client_id"] == ["client-id"]


def test_exchange_without_client_credentials_fails_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen("{}")
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    with pytest.raises(ProviderError) as exc_info:
        _client(client_secret=None).exchange_refresh_token("refresh-1")

    assert exc_info.value.status_code == 0
    assert fake.requests == []


def test_http_error_carries_status_and_reason(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen(
        _http_error(
            403,
            {
                "error": {
                    "code": 403,
                    "message": "The request cannot be completed because you have exceeded your quota.",
                    "errors": [{"reason": "quotaExceeded", "domain": "youtube.quota"}],
                }
            },
        )
    )
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    with pytest.raises(ProviderError) as exc_info:
        _client().list_subscriptions("access-1")

    error = exc_info.value
    assert error.status_code == 403
    assert error.reason == "quotaExceeded"
    assert error.is_quota_error is True
    assert error.is_auth_error is False
    assert "exceeded your quota" in str(error)


def test_forbidden_without_quota_reason_is_not_a_quota_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake = _RecordingUrlopen(
        _http_error(403, {"error": {"errors": [{"reason": "subscriptionForbidden"}]}})
    )
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    with pytest.raises(ProviderError) as exc_info:
        _client().list_subscriptions("access-1")

    assert exc_info.value.is_quota_error is False


def test_token_error_message_includes_description(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen(
        _http_error(400, {"error": "invalid_grant", "error_description": "Token has been revoked."})
    )
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    with pytest.raises(ProviderError, match="invalid_grant: Token has been revoked."):
        _client().exchange_refresh_token("refresh-1")


def test_transport_failure_maps_to_status_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        youtube_client_module,
        "urlopen",
        _RecordingUrlopen(URLError("connection refused")),
    )

    with pytest.raises(ProviderError) as exc_info:
        _client().fetch_channel_feed("UC_1")

    assert exc_info.value.status_code == 0


def test_fetch_channel_feed_returns_raw_document(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _RecordingUrlopen("<feed></feed>")
    monkeypatch.setattr(youtube_client_module, "urlopen", fake)

    document = _client().fetch_channel_feed("UC_1")

    assert document == "<feed></feed>"
    assert fake.requests[0].full_url == "https://feeds.example.test/videos.xml?channel_id=UC_1"
    assert fake.requests[0].get_header("Authorization") is None
