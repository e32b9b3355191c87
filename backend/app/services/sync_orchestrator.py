from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.user_repository import UserRepository
from backend.app.repositories.video_repository import VideoRecord
from backend.app.services.channel_enumerator import (
    ChannelEnumerator,
    ChannelSubscription,
    SubscriptionPagingError,
)
from backend.app.services.credential_refresher import CredentialRefresher
from backend.app.services.duration_filter import (
    SHORT_FORM_MAX_SECONDS,
    DurationLookup,
    DurationResolver,
    drop_short_form,
    merge_lookups,
)
from backend.app.services.quota_ledger import OPERATION_COSTS, QuotaExceededError, QuotaLedger
from backend.app.services.upload_discovery import (
    DEFAULT_WINDOW_HOURS,
    SEARCH_MAX_RESULTS_PER_CHANNEL,
    DiscoveryStrategy,
    discovery_cutoff,
    merge_discovery,
)
from backend.app.services.video_persister import DEFAULT_PERSIST_BATCH_SIZE, VideoPersister
from backend.app.services.youtube_client import MAX_VIDEO_IDS_PER_CALL, ProviderError
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("subfeed.sync")

SyncStatus = Literal["success", "needs_reauth", "quota_exceeded", "failed"]
StrategyName = Literal["search", "feed", "auto"]

SYNC_STATUS_SUCCESS: SyncStatus = "success"
SYNC_STATUS_NEEDS_REAUTH: SyncStatus = "needs_reauth"
SYNC_STATUS_QUOTA_EXCEEDED: SyncStatus = "quota_exceeded"
SYNC_STATUS_FAILED: SyncStatus = "failed"
DEFAULT_INTER_USER_DELAY_SECONDS = 2.0


@dataclass(frozen=True)
class SyncResult:
    user_id: str
    status: SyncStatus
    channels_synced: int = 0
    videos_synced: int = 0
    errors: list[str] = field(default_factory=list)
    quota_used: int = 0
    execution_time_seconds: float = 0.0
    strategy: str | None = None


@dataclass(frozen=True)
class CronSyncResult:
    total_users: int
    successful_syncs: int
    failed_syncs: int
    total_videos_synced: int
    errors: list[str]
    execution_time_seconds: float
    results: list[SyncResult] = field(default_factory=list)


class SyncOrchestrator:
    """Runs the subscription sync pipeline for one user or for every known user.

    A single-user run goes: credential, enumerate, discover, resolve durations and
    drop shorts, persist, aggregate. Hard failures end the run with a non-success
    status; soft per-channel and per-batch failures only add entries to `errors`.
    """

    def __init__(
        self,
        *,
        user_repository: UserRepository,
        credential_refresher: CredentialRefresher,
        channel_enumerator: ChannelEnumerator,
        discovery_strategies: Mapping[str, DiscoveryStrategy],
        duration_resolver: DurationResolver,
        video_persister: VideoPersister,
        quota_ledger: QuotaLedger,
        telemetry: TelemetryClient | None = None,
        strategy: StrategyName = "auto",
        window_hours: int = DEFAULT_WINDOW_HOURS,
        short_form_max_seconds: int = SHORT_FORM_MAX_SECONDS,
        persist_batch_size: int = DEFAULT_PERSIST_BATCH_SIZE,
        inter_user_delay_seconds: float = DEFAULT_INTER_USER_DELAY_SECONDS,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if strategy != "auto" and strategy not in discovery_strategies:
            raise ValueError(f"Discovery strategy is not configured: {strategy}")
        if strategy == "auto" and not {"search", "feed"} <= set(discovery_strategies):
            raise ValueError("Automatic strategy selection needs both search and feed strategies")

        self._user_repository = user_repository
        self._credential_refresher = credential_refresher
        self._channel_enumerator = channel_enumerator
        self._discovery_strategies = dict(discovery_strategies)
        self._duration_resolver = duration_resolver
        self._video_persister = video_persister
        self._quota_ledger = quota_ledger
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._strategy = strategy
        self._window_hours = window_hours
        self._short_form_max_seconds = short_form_max_seconds
        self._persist_batch_size = persist_batch_size
        self._inter_user_delay_seconds = max(0.0, inter_user_delay_seconds)
        self._sleep = sleep if sleep is not None else time.sleep
        self._clock = clock if clock is not None else _utc_now

    def run_sync_for_user(self, user_id: str) -> SyncResult:
        started_at = time.perf_counter()
        quota_used_at_start = self._quota_ledger.current_usage().used
        context_tokens = bind_contextvars(sync_user_id=user_id)
        try:
            with self._telemetry.span("sync.user", user_id=user_id) as outcome:
                result = self._run_pipeline(user_id, started_at, quota_used_at_start)
                outcome.update(
                    status=result.status,
                    strategy=result.strategy,
                    channels_synced=result.channels_synced,
                    videos_synced=result.videos_synced,
                    error_count=len(result.errors),
                    quota_used=result.quota_used,
                )
        finally:
            reset_contextvars(**context_tokens)

        LOGGER.info(
            "sync finished user_id=%s status=%s channels=%s videos=%s errors=%s quota_used=%s",
            user_id,
            result.status,
            result.channels_synced,
            result.videos_synced,
            len(result.errors),
            result.quota_used,
        )
        return result

    def run_sync_for_all_users(self) -> CronSyncResult:
        started_at = time.perf_counter()
        users = self._user_repository.list_all()
        results: list[SyncResult] = []
        errors: list[str] = []
        successful = 0
        failed = 0
        total_videos = 0

        with self._telemetry.span("sync.all", total_users=len(users)) as outcome:
            for index, user in enumerate(users):
                if index > 0 and self._inter_user_delay_seconds > 0:
                    self._sleep(self._inter_user_delay_seconds)
                try:
                    result = self.run_sync_for_user(user.id)
                except Exception as exc:
                    LOGGER.exception("sync crashed user_id=%s", user.id)
                    failed += 1
                    errors.append(f"User {user.id}: unexpected error: {exc}")
                    continue

                results.append(result)
                total_videos += result.videos_synced
                if result.status == SYNC_STATUS_SUCCESS:
                    successful += 1
                else:
                    failed += 1
                errors.extend(f"User {user.id} ({result.status}): {error}" for error in result.errors)

            outcome.update(
                successful_syncs=successful,
                failed_syncs=failed,
                total_videos_synced=total_videos,
            )

        cron_result = CronSyncResult(
            total_users=len(users),
            successful_syncs=successful,
            failed_syncs=failed,
            total_videos_synced=total_videos,
            errors=errors,
            execution_time_seconds=time.perf_counter() - started_at,
            results=results,
        )
        LOGGER.info(
            "sync for all users finished users=%s successful=%s failed=%s videos=%s",
            cron_result.total_users,
            cron_result.successful_syncs,
            cron_result.failed_syncs,
            cron_result.total_videos_synced,
        )
        return cron_result

    def select_strategy(self, channel_count: int) -> DiscoveryStrategy:
        if self._strategy != "auto":
            return self._discovery_strategies[self._strategy]

        search_cost = channel_count * OPERATION_COSTS["search"]
        worst_case_candidates = channel_count * SEARCH_MAX_RESULTS_PER_CHANNEL
        duration_cost = (
            math.ceil(worst_case_candidates / MAX_VIDEO_IDS_PER_CALL) * OPERATION_COSTS["videos"]
        )
        remaining = self._quota_ledger.current_usage().remaining
        if search_cost + duration_cost <= remaining:
            return self._discovery_strategies["search"]
        LOGGER.info(
            "search discovery unaffordable; using feeds channels=%s needed=%s remaining=%s",
            channel_count,
            search_cost + duration_cost,
            remaining,
        )
        return self._discovery_strategies["feed"]

    def _run_pipeline(
        self,
        user_id: str,
        started_at: float,
        quota_used_at_start: int,
    ) -> SyncResult:
        def finish(
            status: SyncStatus,
            errors: list[str],
            *,
            channels_synced: int = 0,
            videos_synced: int = 0,
            strategy: str | None = None,
        ) -> SyncResult:
            return SyncResult(
                user_id=user_id,
                status=status,
                channels_synced=channels_synced,
                videos_synced=videos_synced,
                errors=errors,
                quota_used=max(0, self._quota_ledger.current_usage().used - quota_used_at_start),
                execution_time_seconds=time.perf_counter() - started_at,
                strategy=strategy,
            )

        user = self._user_repository.get(user_id)
        if user is None:
            LOGGER.warning("sync requested for unknown user user_id=%s", user_id)
            return finish(SYNC_STATUS_NEEDS_REAUTH, [f"User {user_id} not found"])

        access_token = self._credential_refresher.get_valid_access_credential(user)
        if access_token is None:
            return finish(
                SYNC_STATUS_NEEDS_REAUTH,
                ["Access credential could not be refreshed; sign in again"],
            )

        refreshed_after_rejection = False

        def recover_credential(stage: str) -> str | None:
            # One forced refresh per run; a refreshed token that is rejected again is dropped.
            nonlocal refreshed_after_rejection
            if refreshed_after_rejection:
                LOGGER.warning(
                    "refreshed credential rejected again user_id=%s stage=%s", user_id, stage
                )
                self._user_repository.clear_access_token(user_id)
                return None
            refreshed_after_rejection = True
            LOGGER.warning(
                "provider rejected credential; forcing refresh user_id=%s stage=%s",
                user_id,
                stage,
            )
            return self._credential_refresher.refresh(user)

        channels: list[ChannelSubscription] | None = None
        while channels is None:
            try:
                channels = self._channel_enumerator.list_all_subscriptions(access_token)
            except QuotaExceededError as exc:
                LOGGER.warning("subscription enumeration hit quota user_id=%s", user_id)
                return finish(SYNC_STATUS_QUOTA_EXCEEDED, [f"Quota exceeded: {exc}"])
            except SubscriptionPagingError as exc:
                return finish(SYNC_STATUS_FAILED, [f"Subscription listing failed: {exc}"])
            except ProviderError as exc:
                if exc.is_auth_error:
                    refreshed_token = recover_credential("subscriptions")
                    if refreshed_token is None:
                        return finish(
                            SYNC_STATUS_NEEDS_REAUTH, [f"Provider rejected credential: {exc}"]
                        )
                    access_token = refreshed_token
                    continue
                if exc.is_quota_error:
                    LOGGER.warning(
                        "provider quota exhausted during enumeration user_id=%s", user_id
                    )
                    return finish(
                        SYNC_STATUS_QUOTA_EXCEEDED, [f"Provider quota exhausted: {exc}"]
                    )
                LOGGER.warning(
                    "subscription enumeration failed user_id=%s status=%s",
                    user_id,
                    exc.status_code,
                    exc_info=True,
                )
                return finish(SYNC_STATUS_FAILED, [f"Subscription listing failed: {exc}"])

        strategy = self.select_strategy(len(channels))
        cutoff = discovery_cutoff(self._clock(), window_hours=self._window_hours)
        discovery = strategy.discover(channels, access_token=access_token, cutoff=cutoff)
        while discovery.credential_rejected:
            refreshed_token = recover_credential("discovery")
            if refreshed_token is None:
                return finish(
                    SYNC_STATUS_NEEDS_REAUTH,
                    [*discovery.errors, "Provider rejected credential during discovery"],
                    strategy=strategy.name,
                )
            access_token = refreshed_token
            discovery = merge_discovery(
                discovery,
                strategy.discover(
                    discovery.pending_channels, access_token=access_token, cutoff=cutoff
                ),
            )
        errors = list(discovery.errors)
        quota_exhausted = discovery.quota_exhausted

        lookup = DurationLookup(durations={})
        if discovery.candidates and not quota_exhausted:
            lookup = self._duration_resolver.resolve_durations(
                [candidate.video_id for candidate in discovery.candidates],
                access_token,
            )
            while lookup.credential_rejected:
                refreshed_token = recover_credential("durations")
                if refreshed_token is None:
                    return finish(
                        SYNC_STATUS_NEEDS_REAUTH,
                        [
                            *errors,
                            *lookup.errors,
                            "Provider rejected credential during duration lookup",
                        ],
                        strategy=strategy.name,
                    )
                access_token = refreshed_token
                lookup = merge_lookups(
                    lookup,
                    self._duration_resolver.resolve_durations(lookup.pending_ids, access_token),
                )
            errors.extend(lookup.errors)
            quota_exhausted = lookup.quota_exhausted

        kept = drop_short_form(
            discovery.candidates,
            lookup.durations,
            threshold_seconds=self._short_form_max_seconds,
        )
        records = [
            VideoRecord(
                user_id=user.id,
                video_id=item.candidate.video_id,
                channel_id=item.candidate.channel_id,
                channel_name=item.candidate.channel_name,
                title=item.candidate.title,
                thumbnail_url=item.candidate.thumbnail_url,
                published_at=item.candidate.published_at.astimezone(UTC).isoformat(),
                duration=item.duration,
            )
            for item in kept
        ]

        persist_result = self._video_persister.upsert_videos(
            records, batch_size=self._persist_batch_size
        )
        errors.extend(persist_result.errors)
        self._user_repository.mark_synced(user.id)

        return finish(
            SYNC_STATUS_QUOTA_EXCEEDED if quota_exhausted else SYNC_STATUS_SUCCESS,
            errors,
            channels_synced=len({item.candidate.channel_id for item in kept}),
            videos_synced=len(persist_result.persisted),
            strategy=strategy.name,
        )


def _utc_now() -> datetime:
    return datetime.now(UTC)
