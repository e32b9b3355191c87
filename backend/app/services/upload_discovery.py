from __future__ import annotations

import calendar
import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import feedparser

from backend.app.repositories.common import parse_iso_datetime
from backend.app.services.channel_enumerator import ChannelSubscription
from backend.app.services.quota_ledger import QuotaExceededError, QuotaLedger
from backend.app.services.youtube_client import ProviderError, as_dict, as_list

LOGGER = logging.getLogger("subfeed.discovery")

DEFAULT_WINDOW_HOURS = 24
SEARCH_MAX_RESULTS_PER_CHANNEL = 10
DEFAULT_FEED_BATCH_SIZE = 10
DEFAULT_FEED_BATCH_DELAY_SECONDS = 0.2
UNKNOWN_CHANNEL_NAME = "Unknown Channel"
FALLBACK_THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/mqdefault.jpg"
FEED_VIDEO_ID_PREFIX = "yt:video:"
SEARCH_THUMBNAIL_PREFERENCE = ("medium", "high", "default")


class FeedParseError(ValueError):
    pass


@dataclass(frozen=True)
class CandidateVideo:
    video_id: str
    channel_id: str
    channel_name: str
    title: str
    thumbnail_url: str | None
    published_at: datetime


@dataclass(frozen=True)
class DiscoveryResult:
    candidates: list[CandidateVideo]
    errors: list[str] = field(default_factory=list)
    quota_exhausted: bool = False
    credential_rejected: bool = False
    pending_channels: list[ChannelSubscription] = field(default_factory=list)


class SearchClient(Protocol):
    def search_channel_videos(
        self,
        access_token: str,
        *,
        channel_id: str,
        published_after: str,
        max_results: int = SEARCH_MAX_RESULTS_PER_CHANNEL,
    ) -> dict[str, Any]:
        ...


class FeedClient(Protocol):
    def fetch_channel_feed(self, channel_id: str) -> str:
        ...


class DiscoveryStrategy(Protocol):
    name: str

    def discover(
        self,
        channels: Sequence[ChannelSubscription],
        *,
        access_token: str,
        cutoff: datetime,
    ) -> DiscoveryResult:
        ...


def discovery_cutoff(now: datetime, *, window_hours: int = DEFAULT_WINDOW_HOURS) -> datetime:
    return now.astimezone(UTC) - timedelta(hours=max(1, window_hours))


class SearchDiscoveryStrategy:
    """Per-channel search call bounded server-side by `publishedAfter`.

    Costs one `search` unit per channel. Running out of quota stops the pass and
    returns what was found so far with `quota_exhausted` set. A rejected access
    token also stops it, with `credential_rejected` set and the unsearched channels
    (the rejected one included) in `pending_channels`.
    """

    name = "search"

    def __init__(
        self,
        *,
        client: SearchClient,
        quota_ledger: QuotaLedger,
        max_results_per_channel: int = SEARCH_MAX_RESULTS_PER_CHANNEL,
    ) -> None:
        self._client = client
        self._quota_ledger = quota_ledger
        self._max_results = max(1, max_results_per_channel)

    def discover(
        self,
        channels: Sequence[ChannelSubscription],
        *,
        access_token: str,
        cutoff: datetime,
    ) -> DiscoveryResult:
        candidates: list[CandidateVideo] = []
        errors: list[str] = []
        published_after = cutoff.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")

        for index, channel in enumerate(channels):
            try:
                self._quota_ledger.consume("search", 1)
            except QuotaExceededError as exc:
                LOGGER.warning(
                    "search discovery stopped on quota channel_id=%s remaining=%s",
                    channel.channel_id,
                    exc.remaining,
                )
                errors.append(f"Quota exhausted before searching channel {channel.channel_id}")
                return _finish(candidates, errors, quota_exhausted=True)

            try:
                payload = self._client.search_channel_videos(
                    access_token,
                    channel_id=channel.channel_id,
                    published_after=published_after,
                    max_results=self._max_results,
                )
            except ProviderError as exc:
                if exc.is_quota_error:
                    LOGGER.warning(
                        "provider reported quota exhaustion during search channel_id=%s",
                        channel.channel_id,
                    )
                    errors.append(f"Provider quota exhausted at channel {channel.channel_id}")
                    return _finish(candidates, errors, quota_exhausted=True)
                if exc.is_auth_error:
                    LOGGER.warning(
                        "search stopped on rejected credential channel_id=%s pending=%s",
                        channel.channel_id,
                        len(channels) - index,
                    )
                    return _finish(
                        candidates,
                        errors,
                        quota_exhausted=False,
                        pending_channels=list(channels[index:]),
                    )
                LOGGER.warning(
                    "search failed channel_id=%s status=%s",
                    channel.channel_id,
                    exc.status_code,
                    exc_info=True,
                )
                errors.append(f"Channel {channel.channel_id} ({channel.channel_name}): {exc}")
                continue

            for item in as_list(payload.get("items")):
                candidate = _candidate_from_search_item(as_dict(item), channel)
                if candidate is not None and candidate.published_at > cutoff:
                    candidates.append(candidate)

        return _finish(candidates, errors, quota_exhausted=False)


class FeedDiscoveryStrategy:
    """Quota-free discovery from each channel's public upload feed.

    Channels are fetched in fixed-size concurrent batches with a pause between
    batches. A failing channel becomes a soft error; the rest of the pass continues.
    """

    name = "feed"

    def __init__(
        self,
        *,
        client: FeedClient,
        batch_size: int = DEFAULT_FEED_BATCH_SIZE,
        batch_delay_seconds: float = DEFAULT_FEED_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._client = client
        self._batch_size = max(1, batch_size)
        self._batch_delay_seconds = max(0.0, batch_delay_seconds)
        self._sleep = sleep if sleep is not None else time.sleep

    def discover(
        self,
        channels: Sequence[ChannelSubscription],
        *,
        access_token: str,
        cutoff: datetime,
    ) -> DiscoveryResult:
        del access_token
        candidates: list[CandidateVideo] = []
        errors: list[str] = []
        if not channels:
            return _finish(candidates, errors, quota_exhausted=False)

        with ThreadPoolExecutor(
            max_workers=self._batch_size, thread_name_prefix="subfeed-feed"
        ) as executor:
            for batch_start in range(0, len(channels), self._batch_size):
                if batch_start > 0 and self._batch_delay_seconds > 0:
                    self._sleep(self._batch_delay_seconds)
                batch = channels[batch_start : batch_start + self._batch_size]
                futures: list[tuple[ChannelSubscription, Future[list[CandidateVideo]]]] = [
                    (channel, executor.submit(self._fetch_channel, channel))
                    for channel in batch
                ]
                for channel, future in futures:
                    try:
                        channel_candidates = future.result()
                    except Exception as exc:
                        LOGGER.warning(
                            "feed discovery failed channel_id=%s",
                            channel.channel_id,
                            exc_info=True,
                        )
                        errors.append(
                            f"Channel {channel.channel_id} ({channel.channel_name}): {exc}"
                        )
                        continue
                    candidates.extend(
                        candidate
                        for candidate in channel_candidates
                        if candidate.published_at > cutoff
                    )

        LOGGER.info(
            "feed discovery finished channels=%s candidates=%s errors=%s",
            len(channels),
            len(candidates),
            len(errors),
        )
        return _finish(candidates, errors, quota_exhausted=False)

    def _fetch_channel(self, channel: ChannelSubscription) -> list[CandidateVideo]:
        document = self._client.fetch_channel_feed(channel.channel_id)
        return parse_channel_feed(document, channel)


def parse_channel_feed(document: str, channel: ChannelSubscription) -> list[CandidateVideo]:
    """Extract candidate videos from an upload feed document.

    Raises `FeedParseError` when the document is not a feed at all. Individual
    entries missing an id or a usable timestamp are skipped.
    """
    parsed = feedparser.parse(document)
    entries = list(parsed.get("entries") or [])
    if parsed.get("bozo") and not entries:
        raise FeedParseError(
            f"Malformed feed for channel {channel.channel_id}: {parsed.get('bozo_exception')}"
        )

    feed_meta = parsed.get("feed") or {}
    feed_author = feed_meta.get("author")
    candidates: list[CandidateVideo] = []
    for entry in entries:
        video_id = _feed_entry_video_id(entry)
        if video_id is None:
            LOGGER.debug("feed entry without video id skipped channel_id=%s", channel.channel_id)
            continue
        published_at = _feed_entry_published_at(entry)
        if published_at is None:
            LOGGER.debug(
                "feed entry without publish time skipped channel_id=%s video_id=%s",
                channel.channel_id,
                video_id,
            )
            continue

        author = entry.get("author") or feed_author
        title = entry.get("title")
        candidates.append(
            CandidateVideo(
                video_id=video_id,
                channel_id=channel.channel_id,
                channel_name=author.strip()
                if isinstance(author, str) and author.strip()
                else UNKNOWN_CHANNEL_NAME,
                title=title.strip() if isinstance(title, str) and title.strip() else video_id,
                thumbnail_url=_feed_entry_thumbnail(entry)
                or FALLBACK_THUMBNAIL_URL.format(video_id=video_id),
                published_at=published_at,
            )
        )
    return candidates


def _feed_entry_video_id(entry: Any) -> str | None:
    raw_video_id = entry.get("yt_videoid")
    if isinstance(raw_video_id, str) and raw_video_id.strip():
        return raw_video_id.strip()
    raw_entry_id = entry.get("id")
    if isinstance(raw_entry_id, str) and raw_entry_id.startswith(FEED_VIDEO_ID_PREFIX):
        video_id = raw_entry_id[len(FEED_VIDEO_ID_PREFIX) :].strip()
        return video_id or None
    return None


def _feed_entry_published_at(entry: Any) -> datetime | None:
    raw_published = entry.get("published")
    if isinstance(raw_published, str):
        published_at = parse_iso_datetime(raw_published)
        if published_at is not None:
            return published_at
    published_parsed = entry.get("published_parsed")
    if published_parsed is not None:
        return datetime.fromtimestamp(calendar.timegm(published_parsed), tz=UTC)
    return None


def _feed_entry_thumbnail(entry: Any) -> str | None:
    for thumbnail in entry.get("media_thumbnail") or []:
        url = thumbnail.get("url") if isinstance(thumbnail, dict) else None
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


def _candidate_from_search_item(
    item: dict[str, Any],
    channel: ChannelSubscription,
) -> CandidateVideo | None:
    video_id = as_dict(item.get("id")).get("videoId")
    if not isinstance(video_id, str) or not video_id.strip():
        return None
    snippet = as_dict(item.get("snippet"))
    published_raw = snippet.get("publishedAt")
    published_at = parse_iso_datetime(published_raw if isinstance(published_raw, str) else None)
    if published_at is None:
        return None

    title = snippet.get("title")
    channel_title = snippet.get("channelTitle")
    thumbnails = as_dict(snippet.get("thumbnails"))
    thumbnail_url: str | None = None
    for key in SEARCH_THUMBNAIL_PREFERENCE:
        url = as_dict(thumbnails.get(key)).get("url")
        if isinstance(url, str) and url.strip():
            thumbnail_url = url.strip()
            break

    return CandidateVideo(
        video_id=video_id.strip(),
        channel_id=channel.channel_id,
        channel_name=channel_title.strip()
        if isinstance(channel_title, str) and channel_title.strip()
        else channel.channel_name,
        title=title.strip() if isinstance(title, str) and title.strip() else video_id.strip(),
        thumbnail_url=thumbnail_url or FALLBACK_THUMBNAIL_URL.format(video_id=video_id.strip()),
        published_at=published_at,
    )


def _finish(
    candidates: list[CandidateVideo],
    errors: list[str],
    *,
    quota_exhausted: bool,
    pending_channels: list[ChannelSubscription] | None = None,
) -> DiscoveryResult:
    unique: dict[str, CandidateVideo] = {}
    for candidate in candidates:
        unique.setdefault(candidate.video_id, candidate)
    ordered = sorted(unique.values(), key=lambda candidate: candidate.published_at, reverse=True)
    return DiscoveryResult(
        candidates=ordered,
        errors=errors,
        quota_exhausted=quota_exhausted,
        credential_rejected=pending_channels is not None,
        pending_channels=pending_channels or [],
    )


def merge_discovery(earlier: DiscoveryResult, resumed: DiscoveryResult) -> DiscoveryResult:
    """Combine a pass stopped on a rejected credential with the pass that resumed it."""
    return _finish(
        [*earlier.candidates, *resumed.candidates],
        [*earlier.errors, *resumed.errors],
        quota_exhausted=resumed.quota_exhausted,
        pending_channels=resumed.pending_channels if resumed.credential_rejected else None,
    )
