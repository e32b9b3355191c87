from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import pytest

from backend.app.services.duration_filter import (
    UNKNOWN_DURATION,
    DurationResolver,
    drop_short_form,
    format_duration,
    merge_lookups,
    parse_duration_seconds,
)
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.upload_discovery import CandidateVideo
from backend.app.services.youtube_client import ProviderError


def _candidate(video_id: str) -> CandidateVideo:
    return CandidateVideo(
        video_id=video_id,
        channel_id="UC_1",
        channel_name="Channel 1",
        title=f"Video {video_id}",
        thumbnail_url=None,
        published_at=datetime(2025, 3, 1, 12, tzinfo=UTC),
    )


class _FakeDetailsClient:
    def __init__(
        self,
        durations: dict[str, str],
        *,
        failing_batches: set[int] | None = None,
        rejected_tokens: set[str] | None = None,
    ) -> None:
        self._durations = durations
        self._failing_batches = failing_batches or set()
        self._rejected_tokens = rejected_tokens or set()
        self.batches: list[list[str]] = []

    def list_video_content_details(
        self,
        access_token: str,
        video_ids: Sequence[str],
    ) -> dict[str, Any]:
        self.batches.append(list(video_ids))
        if access_token in self._rejected_tokens:
            raise ProviderError("Invalid Credentials", status_code=401)
        if len(self.batches) - 1 in self._failing_batches:
            raise ProviderError("Backend Error", status_code=500)
        return {
            "items": [
                {"id": video_id, "contentDetails": {"duration": self._durations[video_id]}}
                for video_id in video_ids
                if video_id in self._durations
            ]
        }


@pytest.mark.parametrize(
    ("raw_value", "expected"),
    [
        ("PT4M13S", 253),
        ("PT1H2M3S", 3_723),
        ("PT2M30S", 150),
        ("PT2M31S", 151),
        ("P0D", 0),
        ("P1DT1S", 86_401),
        ("PT", None),
        ("P", None),
        ("4:13", None),
        (None, None),
    ],
)
def test_parse_duration_seconds(raw_value: str | None, expected: int | None) -> None:
    assert parse_duration_seconds(raw_value) == expected


@pytest.mark.parametrize(
    ("total_seconds", "expected"),
    [(253, "4:13"), (3_723, "1:02:03"), (59, "0:59"), (36_000, "10:00:00")],
)
def test_format_duration(total_seconds: int, expected: str) -> None:
    assert format_duration(total_seconds) == expected


def test_drop_short_form_threshold_is_inclusive() -> None:
    candidates = [_candidate("at_limit"), _candidate("over_limit"), _candidate("zero")]
    durations = {"at_limit": "2:30", "over_limit": "2:31", "zero": "0:00"}

    kept = drop_short_form(candidates, durations)

    assert [(item.candidate.video_id, item.duration) for item in kept] == [("over_limit", "2:31")]


def test_drop_short_form_keeps_unresolved_videos_as_unknown() -> None:
    kept = drop_short_form([_candidate("mystery"), _candidate("long")], {"long": "1:02:03"})

    assert [(item.candidate.video_id, item.duration) for item in kept] == [
        ("mystery", UNKNOWN_DURATION),
        ("long", "1:02:03"),
    ]


def test_drop_short_form_honours_a_custom_threshold() -> None:
    kept = drop_short_form([_candidate("a")], {"a": "4:00"}, threshold_seconds=300)

    assert kept == []


def test_resolver_batches_ids_and_charges_one_unit_per_batch() -> None:
    video_ids = [f"v{index}" for index in range(120)]
    client = _FakeDetailsClient({video_id: "PT10M" for video_id in video_ids})
    ledger = QuotaLedger(daily_limit=100)
    resolver = DurationResolver(client=client, quota_ledger=ledger)

    lookup = resolver.resolve_durations([*video_ids, "v0", ""], "token")

    assert [len(batch) for batch in client.batches] == [50, 50, 20]
    assert ledger.current_usage().used == 3
    assert len(lookup.durations) == 120
    assert lookup.durations["v7"] == "10:00"
    assert lookup.errors == []
    assert lookup.quota_exhausted is False


def test_resolver_stops_when_quota_runs_out() -> None:
    video_ids = [f"v{index}" for index in range(75)]
    client = _FakeDetailsClient({video_id: "PT5M" for video_id in video_ids})
    resolver = DurationResolver(client=client, quota_ledger=QuotaLedger(daily_limit=1))

    lookup = resolver.resolve_durations(video_ids, "token")

    assert lookup.quota_exhausted is True
    assert len(client.batches) == 1
    assert len(lookup.durations) == 50
    assert lookup.errors == ["Quota exhausted before resolving 25 durations"]


def test_resolver_treats_a_failed_batch_as_soft_error() -> None:
    video_ids = [f"v{index}" for index in range(60)]
    client = _FakeDetailsClient(
        {video_id: "PT5M" for video_id in video_ids},
        failing_batches={0},
    )
    resolver = DurationResolver(client=client, quota_ledger=QuotaLedger(daily_limit=10))

    lookup = resolver.resolve_durations(video_ids, "token")

    assert sorted(lookup.durations) == sorted(video_ids[50:])
    assert len(lookup.errors) == 1
    assert lookup.quota_exhausted is False


def test_resolver_skips_items_with_unparseable_durations() -> None:
    client = _FakeDetailsClient({"live": "P0D", "odd": "PT", "ok": "PT3M1S"})
    resolver = DurationResolver(client=client, quota_ledger=QuotaLedger(daily_limit=10))

    lookup = resolver.resolve_durations(["live", "odd", "ok"], "token")

    assert lookup.durations == {"live": "0:00", "ok": "3:01"}


def test_resolver_stops_on_rejected_credential_and_resumes_with_a_new_one() -> None:
    video_ids = [f"v{index}" for index in range(60)]
    client = _FakeDetailsClient(
        {video_id: "PT5M" for video_id in video_ids},
        rejected_tokens={"stale"},
    )
    resolver = DurationResolver(client=client, quota_ledger=QuotaLedger(daily_limit=10))

    stopped = resolver.resolve_durations(video_ids, "stale")

    assert stopped.credential_rejected is True
    assert stopped.pending_ids == video_ids
    assert stopped.durations == {}
    assert stopped.errors == []

    resumed = merge_lookups(stopped, resolver.resolve_durations(stopped.pending_ids, "fresh"))

    assert resumed.credential_rejected is False
    assert resumed.pending_ids == []
    assert len(resumed.durations) == 60
    assert [len(batch) for batch in client.batches] == [50, 50, 10]
