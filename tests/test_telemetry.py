from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from backend.app.telemetry import TelemetryClient, build_telemetry_client


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_telemetry_client_redacts_sensitive_fields() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "sync.user.start",
        user_id="usr_123",
        access_token="ya29.secret",
        refresh_token="1//secret",
        client_secret="shh",
        Authorization="Bearer abc",
        channel_ids=["UC_1", "UC_2", "UC_3"],
        title="  a   title with\nwhitespace ",
        count=3,
    )

    assert len(sink.events) == 1
    event_name, attributes = sink.events[0]
    assert event_name == "sync.user.start"
    assert attributes["user_id"] == "usr_123"
    assert attributes["count"] == 3
    assert attributes["access_token"] == "[redacted]"
    assert attributes["refresh_token"] == "[redacted]"
    assert attributes["client_secret"] == "[redacted]"
    assert attributes["authorization"] == "[redacted]"
    assert attributes["channel_ids"] == 3
    assert attributes["title"] == "a title with whitespace"


def test_telemetry_client_truncates_long_strings() -> None:
    sink = _CaptureSink()
    TelemetryClient(enabled=True, sink=sink).emit("sync.user.finish", detail="x" * 500)

    detail = sink.events[0][1]["detail"]
    assert detail.endswith("...")
    assert len(detail) == 163


def test_disabled_telemetry_client_does_not_emit() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=False, sink=sink)

    client.emit("sync.user.start", user_id="usr_1")
    with client.span("sync.user", user_id="usr_1"):
        pass

    assert sink.events == []


def test_span_emits_start_and_finish_with_outcome() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with client.span("sync.user", user_id="usr_1") as outcome:
        outcome.update(status="success", videos_synced=2)

    assert [name for name, _ in sink.events] == ["sync.user.start", "sync.user.finish"]
    finish = sink.events[1][1]
    assert finish["user_id"] == "usr_1"
    assert finish["status"] == "success"
    assert finish["videos_synced"] == 2
    assert isinstance(finish["duration_ms"], int)


def test_span_emits_error_and_reraises() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with pytest.raises(RuntimeError):
        with client.span("sync.all", total_users=3):
            raise RuntimeError("boom")

    assert [name for name, _ in sink.events] == ["sync.all.start", "sync.all.error"]
    assert sink.events[1][1]["error_type"] == "RuntimeError"
    assert sink.events[1][1]["total_users"] == 3


def test_build_telemetry_client_none_sink_is_disabled() -> None:
    assert build_telemetry_client(enabled=True, sink="none").enabled is False
    assert build_telemetry_client(enabled=False, sink="log").enabled is False
    assert build_telemetry_client(enabled=True, sink="log").enabled is True
