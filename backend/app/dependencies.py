from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.quota_repository import QuotaRepository
from backend.app.repositories.user_repository import UserRepository
from backend.app.repositories.video_repository import VideoRepository
from backend.app.services.channel_enumerator import ChannelEnumerator
from backend.app.services.credential_refresher import CredentialRefresher
from backend.app.services.duration_filter import DurationResolver
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.sync_orchestrator import SyncOrchestrator
from backend.app.services.upload_discovery import FeedDiscoveryStrategy, SearchDiscoveryStrategy
from backend.app.services.video_persister import VideoPersister
from backend.app.services.youtube_client import YouTubeClient
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_user_repository() -> UserRepository:
    return UserRepository(get_database())


@lru_cache(maxsize=1)
def get_video_repository() -> VideoRepository:
    return VideoRepository(get_database())


@lru_cache(maxsize=1)
def get_quota_ledger() -> QuotaLedger:
    settings = get_settings()
    return QuotaLedger(
        daily_limit=settings.youtube_daily_quota_limit,
        repository=QuotaRepository(get_database()),
    )


@lru_cache(maxsize=1)
def get_youtube_client() -> YouTubeClient:
    settings = get_settings()
    return YouTubeClient(
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
        api_base_url=settings.youtube_api_base_url,
        token_url=settings.oauth_token_url,
        feed_base_url=settings.youtube_feed_base_url,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_sync_orchestrator() -> SyncOrchestrator:
    settings = get_settings()
    client = get_youtube_client()
    quota_ledger = get_quota_ledger()
    user_repository = get_user_repository()

    return SyncOrchestrator(
        user_repository=user_repository,
        credential_refresher=CredentialRefresher(
            user_repository=user_repository,
            token_client=client,
        ),
        channel_enumerator=ChannelEnumerator(
            client=client,
            quota_ledger=quota_ledger,
            page_delay_seconds=settings.subscription_page_delay_seconds,
        ),
        discovery_strategies={
            "search": SearchDiscoveryStrategy(client=client, quota_ledger=quota_ledger),
            "feed": FeedDiscoveryStrategy(
                client=client,
                batch_size=settings.feed_batch_size,
                batch_delay_seconds=settings.feed_batch_delay_seconds,
            ),
        },
        duration_resolver=DurationResolver(client=client, quota_ledger=quota_ledger),
        video_persister=VideoPersister(
            video_repository=get_video_repository(),
            quota_ledger=quota_ledger,
        ),
        quota_ledger=quota_ledger,
        telemetry=get_telemetry(),
        strategy=settings.discovery_strategy,
        window_hours=settings.discovery_window_hours,
        short_form_max_seconds=settings.short_form_max_seconds,
        persist_batch_size=settings.persist_batch_size,
        inter_user_delay_seconds=settings.inter_user_delay_seconds,
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_sync_orchestrator.cache_clear()
    get_youtube_client.cache_clear()
    get_quota_ledger.cache_clear()
    get_video_repository.cache_clear()
    get_user_repository.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
