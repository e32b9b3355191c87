from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.dependencies import (
    get_quota_ledger,
    get_sync_orchestrator,
    get_user_repository,
    get_video_repository,
)
from backend.app.models.sync_contracts import (
    CronSyncResultResponse,
    DismissalStatus,
    DismissVideoResponse,
    FeedResponse,
    FeedVideoResponse,
    QuotaStatusResponse,
    SyncResultResponse,
    UserAuthRequest,
    UserResponse,
)
from backend.app.repositories.user_repository import UserRecord, UserRepository
from backend.app.repositories.video_repository import VideoRepository
from backend.app.services.quota_ledger import QuotaLedger, seconds_until
from backend.app.services.sync_orchestrator import SyncOrchestrator

router = APIRouter()


def _require_user(user_repository: UserRepository, user_id: str) -> UserRecord:
    user = user_repository.get(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"Unknown user: {user_id}")
    return user


@router.post(
    "/users",
    response_model=UserResponse,
    operation_id="users_upsert_from_auth",
    tags=["users"],
)
def users_upsert_from_auth(
    request: UserAuthRequest,
    user_repository: Annotated[UserRepository, Depends(get_user_repository)],
) -> UserResponse:
    record = user_repository.create_or_update_from_auth(
        external_id=request.external_id,
        email=request.email,
        access_token=request.access_token,
        access_token_expires_at=request.access_token_expires_at,
        refresh_token=request.refresh_token,
    )
    return UserResponse.from_record(record)


@router.post(
    "/sync/{user_id}",
    response_model=SyncResultResponse,
    operation_id="sync_user",
    tags=["sync"],
)
def sync_user(
    user_id: str,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
    user_repository: Annotated[UserRepository, Depends(get_user_repository)],
) -> SyncResultResponse:
    _require_user(user_repository, user_id)
    context_tokens = bind_contextvars(sync_trigger="api")
    try:
        result = orchestrator.run_sync_for_user(user_id)
    finally:
        reset_contextvars(**context_tokens)
    return SyncResultResponse.from_result(result)


@router.post(
    "/sync",
    response_model=CronSyncResultResponse,
    operation_id="sync_all_users",
    tags=["sync"],
)
def sync_all_users(
    orchestrator: Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)],
) -> CronSyncResultResponse:
    context_tokens = bind_contextvars(sync_trigger="api_all")
    try:
        result = orchestrator.run_sync_for_all_users()
    finally:
        reset_contextvars(**context_tokens)
    return CronSyncResultResponse.from_result(result)


@router.get(
    "/quota",
    response_model=QuotaStatusResponse,
    operation_id="quota_status",
    tags=["quota"],
)
def quota_status(
    quota_ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
) -> QuotaStatusResponse:
    usage = quota_ledger.current_usage()
    return QuotaStatusResponse.from_usage(
        usage,
        utilization_percent=quota_ledger.utilization_percent(),
        should_throttle=quota_ledger.should_throttle(),
        recommended_delay_seconds=quota_ledger.recommended_delay(),
        seconds_until_reset=seconds_until(usage.reset_at),
        operations=quota_ledger.operation_history()[-20:],
    )


@router.get(
    "/users/{user_id}/videos",
    response_model=FeedResponse,
    operation_id="user_feed_list",
    tags=["feed"],
)
def user_feed_list(
    user_id: str,
    user_repository: Annotated[UserRepository, Depends(get_user_repository)],
    video_repository: Annotated[VideoRepository, Depends(get_video_repository)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> FeedResponse:
    _require_user(user_repository, user_id)
    videos = video_repository.list_feed(user_id, limit=limit, offset=offset)
    return FeedResponse(
        user_id=user_id,
        total=video_repository.count_active(user_id),
        videos=[FeedVideoResponse.from_stored(video) for video in videos],
    )


def _dismiss_video(
    *,
    user_id: str,
    video_id: str,
    status: DismissalStatus,
    user_repository: UserRepository,
    video_repository: VideoRepository,
) -> DismissVideoResponse:
    _require_user(user_repository, user_id)
    if not video_repository.dismiss(user_id, video_id, status=status):
        raise HTTPException(
            status_code=404,
            detail=f"No active video {video_id} in the feed of user {user_id}",
        )
    return DismissVideoResponse(user_id=user_id, video_id=video_id, status=status)


@router.post(
    "/users/{user_id}/videos/{video_id}/watched",
    response_model=DismissVideoResponse,
    operation_id="user_video_mark_watched",
    tags=["feed"],
)
def user_video_mark_watched(
    user_id: str,
    video_id: str,
    user_repository: Annotated[UserRepository, Depends(get_user_repository)],
    video_repository: Annotated[VideoRepository, Depends(get_video_repository)],
) -> DismissVideoResponse:
    return _dismiss_video(
        user_id=user_id,
        video_id=video_id,
        status="watched",
        user_repository=user_repository,
        video_repository=video_repository,
    )


@router.post(
    "/users/{user_id}/videos/{video_id}/skipped",
    response_model=DismissVideoResponse,
    operation_id="user_video_mark_skipped",
    tags=["feed"],
)
def user_video_mark_skipped(
    user_id: str,
    video_id: str,
    user_repository: Annotated[UserRepository, Depends(get_user_repository)],
    video_repository: Annotated[VideoRepository, Depends(get_video_repository)],
) -> DismissVideoResponse:
    return _dismiss_video(
        user_id=user_id,
        video_id=video_id,
        status="skipped",
        user_repository=user_repository,
        video_repository=video_repository,
    )
