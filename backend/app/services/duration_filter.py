from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from backend.app.services.quota_ledger import QuotaExceededError, QuotaLedger
from backend.app.services.upload_discovery import CandidateVideo
from backend.app.services.youtube_client import (
    MAX_VIDEO_IDS_PER_CALL,
    ProviderError,
    as_dict,
    as_list,
)

LOGGER = logging.getLogger("subfeed.durations")

SHORT_FORM_MAX_SECONDS = 150
UNKNOWN_DURATION = "Unknown"
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
DISPLAY_DURATION_PATTERN = re.compile(r"^(?:(?P<hours>\d+):)?(?P<minutes>\d+):(?P<seconds>\d{2})$")


class VideoDetailsClient(Protocol):
    def list_video_content_details(
        self,
        access_token: str,
        video_ids: Sequence[str],
    ) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class DurationLookup:
    durations: dict[str, str]
    errors: list[str] = field(default_factory=list)
    quota_exhausted: bool = False
    credential_rejected: bool = False
    pending_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FilteredVideo:
    candidate: CandidateVideo
    duration: str


def parse_duration_seconds(raw_value: str | None) -> int | None:
    if raw_value is None:
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None or raw_value.strip() in {"P", "PT"}:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def format_duration(total_seconds: int) -> str:
    hours, remainder = divmod(max(0, total_seconds), 3_600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def display_duration_seconds(display: str) -> int | None:
    matched = DISPLAY_DURATION_PATTERN.match(display.strip())
    if matched is None:
        return None
    hours = int(matched.group("hours") or 0)
    return hours * 3_600 + int(matched.group("minutes")) * 60 + int(matched.group("seconds"))


def is_short(total_seconds: int, *, threshold_seconds: int = SHORT_FORM_MAX_SECONDS) -> bool:
    return total_seconds <= threshold_seconds


class DurationResolver:
    """Batch-resolves runtimes through the `videos` endpoint, one quota unit per batch.

    A rejected access token stops the lookup with `credential_rejected` set and the
    ids not yet resolved in `pending_ids`, so the caller can resume after a refresh.
    """

    def __init__(
        self,
        *,
        client: VideoDetailsClient,
        quota_ledger: QuotaLedger,
        batch_size: int = MAX_VIDEO_IDS_PER_CALL,
    ) -> None:
        self._client = client
        self._quota_ledger = quota_ledger
        self._batch_size = max(1, min(MAX_VIDEO_IDS_PER_CALL, batch_size))

    def resolve_durations(self, video_ids: Sequence[str], access_token: str) -> DurationLookup:
        unique_ids = list(dict.fromkeys(video_id for video_id in video_ids if video_id))
        durations: dict[str, str] = {}
        errors: list[str] = []

        for batch_start in range(0, len(unique_ids), self._batch_size):
            batch = unique_ids[batch_start : batch_start + self._batch_size]
            try:
                self._quota_ledger.consume("videos", 1)
            except QuotaExceededError:
                unresolved = len(unique_ids) - batch_start
                LOGGER.warning("duration lookup stopped on quota unresolved=%s", unresolved)
                errors.append(f"Quota exhausted before resolving {unresolved} durations")
                return DurationLookup(durations=durations, errors=errors, quota_exhausted=True)

            try:
                payload = self._client.list_video_content_details(access_token, batch)
            except ProviderError as exc:
                if exc.is_quota_error:
                    unresolved = len(unique_ids) - batch_start
                    LOGGER.warning(
                        "provider reported quota exhaustion during duration lookup unresolved=%s",
                        unresolved,
                    )
                    errors.append(f"Provider quota exhausted with {unresolved} durations unresolved")
                    return DurationLookup(durations=durations, errors=errors, quota_exhausted=True)
                if exc.is_auth_error:
                    pending_ids = unique_ids[batch_start:]
                    LOGGER.warning(
                        "duration lookup stopped on rejected credential unresolved=%s",
                        len(pending_ids),
                    )
                    return DurationLookup(
                        durations=durations,
                        errors=errors,
                        credential_rejected=True,
                        pending_ids=pending_ids,
                    )
                LOGGER.warning(
                    "duration batch failed size=%s status=%s",
                    len(batch),
                    exc.status_code,
                    exc_info=True,
                )
                errors.append(f"Duration lookup failed for {len(batch)} videos: {exc}")
                continue

            for item in as_list(payload.get("items")):
                item_dict = as_dict(item)
                video_id = item_dict.get("id")
                raw_duration = as_dict(item_dict.get("contentDetails")).get("duration")
                total_seconds = parse_duration_seconds(
                    raw_duration if isinstance(raw_duration, str) else None
                )
                if not isinstance(video_id, str) or total_seconds is None:
                    continue
                durations[video_id] = format_duration(total_seconds)

        LOGGER.debug("durations resolved requested=%s resolved=%s", len(unique_ids), len(durations))
        return DurationLookup(durations=durations, errors=errors)


def drop_short_form(
    candidates: Sequence[CandidateVideo],
    durations: dict[str, str],
    *,
    threshold_seconds: int = SHORT_FORM_MAX_SECONDS,
) -> list[FilteredVideo]:
    """Drop candidates at or under the short-form threshold.

    Candidates with no resolved duration are kept and marked `UNKNOWN_DURATION`.
    """
    kept: list[FilteredVideo] = []
    dropped = 0
    for candidate in candidates:
        display = durations.get(candidate.video_id)
        total_seconds = display_duration_seconds(display) if display is not None else None
        if total_seconds is None:
            kept.append(FilteredVideo(candidate=candidate, duration=UNKNOWN_DURATION))
            continue
        if is_short(total_seconds, threshold_seconds=threshold_seconds):
            dropped += 1
            continue
        kept.append(FilteredVideo(candidate=candidate, duration=display))

    if dropped:
        LOGGER.info("short-form videos dropped count=%s kept=%s", dropped, len(kept))
    return kept


def merge_lookups(earlier: DurationLookup, resumed: DurationLookup) -> DurationLookup:
    return DurationLookup(
        durations={**earlier.durations, **resumed.durations},
        errors=[*earlier.errors, *resumed.errors],
        quota_exhausted=resumed.quota_exhausted,
        credential_rejected=resumed.credential_rejected,
        pending_ids=list(resumed.pending_ids),
    )
