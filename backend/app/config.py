from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".subfeed"
DISCOVERY_STRATEGIES: frozenset[str] = frozenset({"search", "feed", "auto"})
MIN_HTTP_TIMEOUT_SECONDS = 10.0
MAX_HTTP_TIMEOUT_SECONDS = 30.0
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("subfeed.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "scheduler_run_on_start",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{SUBFEED_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `SUBFEED_*` environment variable (or `.env`),
    and its description states what it controls and its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBFEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("subfeed.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('subfeed.db'))}",
    )

    # Provider endpoints and OAuth client.
    oauth_client_id: str | None = Field(
        default=None,
        description="OAuth client id used for refresh-token exchange.",
    )
    oauth_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used for refresh-token exchange.",
    )
    oauth_token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint (form-encoded refresh grant).",
    )
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="YouTube Data API base URL.",
    )
    youtube_feed_base_url: str = Field(
        default="https://www.youtube.com/feeds/videos.xml",
        description="Per-channel upload feed URL; `channel_id` is appended as a query parameter.",
    )
    http_timeout_seconds: float = Field(
        default=20.0,
        description="Timeout for every outbound provider call, clamped to 10-30 seconds.",
    )

    # Quota and sync pipeline.
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=0,
        description="Daily YouTube Data API unit budget enforced by the quota ledger.",
    )
    discovery_strategy: Literal["search", "feed", "auto"] = Field(
        default="auto",
        description=(
            "Upload discovery strategy. `search` is quota-charged per channel, `feed` is "
            "quota-free, `auto` uses search only when the remaining budget covers it."
        ),
    )
    discovery_window_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 30,
        description="Only uploads published within this many hours are discovered.",
    )
    short_form_max_seconds: int = Field(
        default=150,
        ge=0,
        description="Videos at or under this duration are treated as shorts and dropped.",
    )
    feed_batch_size: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Channels fetched concurrently per feed discovery batch.",
    )
    feed_batch_delay_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Pause between feed discovery batches.",
    )
    subscription_page_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Pause between subscription listing pages.",
    )
    persist_batch_size: int = Field(
        default=100,
        ge=1,
        le=1_000,
        description="Videos written per persistence batch.",
    )
    inter_user_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Pause between users during a sync of every user.",
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=False,
        validation_alias="SUBFEED_ENABLE_SCHEDULER",
        description="Enable the background loop that syncs every user on a fixed cadence.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=86_400,
        ge=60,
        description="Seconds between background syncs of every user (daily by default).",
    )
    scheduler_run_on_start: bool = Field(
        default=False,
        description="Run the first background sync immediately instead of after one interval.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("discovery_strategy", mode="before")
    @classmethod
    def _normalize_discovery_strategy(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SUBFEED_DISCOVERY_STRATEGY must be a string.")
        normalized = value.strip().lower()
        if normalized in DISCOVERY_STRATEGIES:
            return normalized
        raise ValueError("SUBFEED_DISCOVERY_STRATEGY must be set to: search, feed, auto.")

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SUBFEED_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("SUBFEED_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("http_timeout_seconds", mode="before")
    @classmethod
    def _clamp_http_timeout(cls, value: Any) -> float:
        try:
            timeout = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("SUBFEED_HTTP_TIMEOUT_SECONDS must be a number.") from exc
        return min(MAX_HTTP_TIMEOUT_SECONDS, max(MIN_HTTP_TIMEOUT_SECONDS, timeout))

    @field_validator("oauth_token_url", "youtube_api_base_url", "youtube_feed_base_url", mode="before")
    @classmethod
    def _normalize_urls(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"SUBFEED_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            raise ValueError(f"{env_name} must be an http(s) URL.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("oauth_client_id", "oauth_client_secret", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_oauth_configuration(
    *,
    oauth_client_id: str | None,
    oauth_client_secret: str | None,
) -> None:
    errors: list[str] = []

    if oauth_client_id is None:
        errors.append("SUBFEED_OAUTH_CLIENT_ID is required to refresh access tokens.")
    if oauth_client_secret is None:
        errors.append("SUBFEED_OAUTH_CLIENT_SECRET is required to refresh access tokens.")

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid OAuth configuration:\n{bullets}")


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(*, validate_oauth_secrets: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_oauth_secrets:
        _validate_oauth_configuration(
            oauth_client_id=settings.oauth_client_id,
            oauth_client_secret=settings.oauth_client_secret,
        )

    return settings
