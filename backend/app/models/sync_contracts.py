from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.repositories.user_repository import UserRecord
from backend.app.repositories.video_repository import StoredVideo
from backend.app.services.quota_ledger import QuotaOperation, QuotaUsage
from backend.app.services.sync_orchestrator import CronSyncResult, SyncResult

SyncStatusName = Literal["success", "needs_reauth", "quota_exceeded", "failed"]
DismissalStatus = Literal["watched", "skipped"]


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class UserAuthRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320)
    access_token: str | None = Field(default=None, max_length=4096)
    access_token_expires_at: str | None = Field(default=None, max_length=64)
    refresh_token: str | None = Field(default=None, max_length=4096)

    @field_validator("external_id")
    @classmethod
    def _strip_external_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("external_id must not be blank")
        return normalized

    @field_validator("access_token", "access_token_expires_at", "refresh_token", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    external_id: str
    email: str
    has_access_token: bool
    last_sync_at: str | None
    created_at: str

    @classmethod
    def from_record(cls, record: UserRecord) -> UserResponse:
        return cls(
            id=record.id,
            external_id=record.external_id,
            email=record.email,
            has_access_token=record.access_token is not None,
            last_sync_at=record.last_sync_at,
            created_at=record.created_at,
        )


class SyncResultResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    status: SyncStatusName
    channels_synced: int
    videos_synced: int
    errors: list[str]
    quota_used: int
    execution_time_seconds: float
    strategy: str | None

    @classmethod
    def from_result(cls, result: SyncResult) -> SyncResultResponse:
        return cls(
            user_id=result.user_id,
            status=result.status,
            channels_synced=result.channels_synced,
            videos_synced=result.videos_synced,
            errors=list(result.errors),
            quota_used=result.quota_used,
            execution_time_seconds=round(result.execution_time_seconds, 3),
            strategy=result.strategy,
        )


class CronSyncResultResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_users: int
    successful_syncs: int
    failed_syncs: int
    total_videos_synced: int
    errors: list[str]
    execution_time_seconds: float
    results: list[SyncResultResponse]

    @classmethod
    def from_result(cls, result: CronSyncResult) -> CronSyncResultResponse:
        return cls(
            total_users=result.total_users,
            successful_syncs=result.successful_syncs,
            failed_syncs=result.failed_syncs,
            total_videos_synced=result.total_videos_synced,
            errors=list(result.errors),
            execution_time_seconds=round(result.execution_time_seconds, 3),
            results=[SyncResultResponse.from_result(item) for item in result.results],
        )


class QuotaOperationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str
    cost: int
    timestamp: str


class QuotaStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    used: int
    limit: int
    remaining: int
    utilization_percent: float
    should_throttle: bool
    recommended_delay_seconds: float
    reset_at: str
    seconds_until_reset: int
    recent_operations: list[QuotaOperationResponse]

    @classmethod
    def from_usage(
        cls,
        usage: QuotaUsage,
        *,
        utilization_percent: float,
        should_throttle: bool,
        recommended_delay_seconds: float,
        seconds_until_reset: int,
        operations: list[QuotaOperation],
    ) -> QuotaStatusResponse:
        return cls(
            used=usage.used,
            limit=usage.limit,
            remaining=usage.remaining,
            utilization_percent=round(utilization_percent, 2),
            should_throttle=should_throttle,
            recommended_delay_seconds=recommended_delay_seconds,
            reset_at=usage.reset_at.isoformat(),
            seconds_until_reset=seconds_until_reset,
            recent_operations=[
                QuotaOperationResponse(
                    kind=operation.kind,
                    cost=operation.cost,
                    timestamp=operation.timestamp.isoformat(),
                )
                for operation in operations
            ],
        )


class FeedVideoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    channel_id: str
    channel_name: str
    title: str
    thumbnail_url: str | None
    published_at: str
    duration: str | None
    created_at: str

    @classmethod
    def from_stored(cls, stored: StoredVideo) -> FeedVideoResponse:
        record = stored.record
        return cls(
            video_id=record.video_id,
            channel_id=record.channel_id,
            channel_name=record.channel_name,
            title=record.title,
            thumbnail_url=record.thumbnail_url,
            published_at=record.published_at,
            duration=record.duration,
            created_at=stored.created_at,
        )


class FeedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    total: int
    videos: list[FeedVideoResponse]


class DismissVideoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    video_id: str
    status: DismissalStatus
