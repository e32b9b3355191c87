from __future__ import annotations

import logging
import math
import sqlite3
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock

from backend.app.repositories.common import parse_iso_datetime
from backend.app.repositories.quota_repository import QuotaRepository, StoredQuotaState

LOGGER = logging.getLogger("subfeed.quota")

DEFAULT_DAILY_LIMIT = 10_000
OPERATION_HISTORY_LIMIT = 100
THROTTLE_UTILIZATION_PERCENT = 80.0

# Provider units charged per call, by operation kind.
OPERATION_COSTS: dict[str, int] = {
    "subscriptions": 1,
    "search": 1,
    "videos": 1,
    "channels": 1,
}
CONSERVATIVE_BATCH_CAPS: dict[str, int] = {
    "subscriptions": 50,
    "search": 10,
    "videos": 50,
    "channels": 50,
}
# (utilization percent strictly above, delay seconds), checked highest first.
DELAY_THRESHOLDS: tuple[tuple[float, float], ...] = (
    (90.0, 5.0),
    (80.0, 2.0),
    (60.0, 1.0),
)
DEFAULT_DELAY_SECONDS = 0.5


class QuotaExceededError(Exception):
    def __init__(self, message: str, *, needed: int, remaining: int) -> None:
        super().__init__(message)
        self.needed = needed
        self.remaining = remaining


@dataclass(frozen=True)
class QuotaOperation:
    kind: str
    cost: int
    timestamp: datetime


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    limit: int
    remaining: int
    reset_at: datetime


def next_utc_midnight(now: datetime) -> datetime:
    current = now.astimezone(UTC)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class QuotaLedger:
    """Process-wide accounting of the provider's daily request budget.

    Every read and increment happens under one lock. The budget resets when the clock
    crosses the stored boundary, which is always the next UTC midnight. When a
    repository is supplied the counter is loaded on start and saved after each change,
    so restarts within the same UTC day keep their usage.
    """

    def __init__(
        self,
        *,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        repository: QuotaRepository | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._limit = max(0, daily_limit)
        self._repository = repository
        self._clock = clock if clock is not None else _utc_now
        self._lock = Lock()
        self._used = 0
        self._reset_at = next_utc_midnight(self._clock())
        self._operations: deque[QuotaOperation] = deque(maxlen=OPERATION_HISTORY_LIMIT)
        self._load_state()

    def can_consume(self, kind: str, count: int = 1) -> bool:
        cost = _operation_cost(kind, count)
        with self._lock:
            self._maybe_reset_locked()
            return self._used + cost <= self._limit

    def consume(self, kind: str, count: int = 1) -> int:
        cost = _operation_cost(kind, count)
        with self._lock:
            self._maybe_reset_locked()
            remaining = max(0, self._limit - self._used)
            if self._used + cost > self._limit:
                raise QuotaExceededError(
                    f"Insufficient quota for {kind} x{count}: need {cost}, have {remaining}",
                    needed=cost,
                    remaining=remaining,
                )
            self._used += cost
            self._operations.append(
                QuotaOperation(kind=kind, cost=cost, timestamp=self._clock())
            )
            used = self._used
            self._save_state_locked()

        LOGGER.debug("quota consumed kind=%s cost=%s used=%s limit=%s", kind, cost, used, self._limit)
        if self._limit > 0 and used / self._limit * 100 > THROTTLE_UTILIZATION_PERCENT:
            LOGGER.warning("quota utilization high used=%s limit=%s", used, self._limit)
        return cost

    def current_usage(self) -> QuotaUsage:
        with self._lock:
            self._maybe_reset_locked()
            return QuotaUsage(
                used=self._used,
                limit=self._limit,
                remaining=max(0, self._limit - self._used),
                reset_at=self._reset_at,
            )

    def utilization_percent(self) -> float:
        usage = self.current_usage()
        if usage.limit <= 0:
            return 100.0
        return usage.used / usage.limit * 100

    def should_throttle(self) -> bool:
        return self.utilization_percent() > THROTTLE_UTILIZATION_PERCENT

    def recommended_delay(self) -> float:
        utilization = self.utilization_percent()
        for threshold, delay_seconds in DELAY_THRESHOLDS:
            if utilization > threshold:
                return delay_seconds
        return DEFAULT_DELAY_SECONDS

    def optimal_batch_size(self, kind: str) -> int:
        cost = _operation_cost(kind, 1)
        remaining = self.current_usage().remaining
        return min(remaining // cost, CONSERVATIVE_BATCH_CAPS[kind])

    def estimate_time_to_reset(self) -> timedelta:
        usage = self.current_usage()
        return max(timedelta(0), usage.reset_at - self._clock())

    def operation_history(self) -> list[QuotaOperation]:
        with self._lock:
            return list(self._operations)

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()
        LOGGER.info("quota ledger reset limit=%s", self._limit)

    def _maybe_reset_locked(self) -> None:
        if self._clock() >= self._reset_at:
            LOGGER.info(
                "quota reset boundary crossed previous_used=%s reset_at=%s",
                self._used,
                self._reset_at.isoformat(),
            )
            self._reset_locked()

    def _reset_locked(self) -> None:
        self._used = 0
        self._operations.clear()
        self._reset_at = next_utc_midnight(self._clock())
        self._save_state_locked()

    def _load_state(self) -> None:
        if self._repository is None:
            return
        try:
            stored = self._repository.load()
        except sqlite3.Error:
            LOGGER.warning("quota state load failed; starting from zero", exc_info=True)
            return
        if stored is None:
            return

        reset_at = parse_iso_datetime(stored.reset_at)
        if reset_at is None or self._clock() >= reset_at:
            LOGGER.debug("stored quota state expired; starting from zero")
            return

        self._used = max(0, stored.used)
        self._reset_at = reset_at
        for raw_operation in stored.operations:
            operation = _operation_from_dict(raw_operation)
            if operation is not None:
                self._operations.append(operation)
        LOGGER.info("quota state resumed used=%s limit=%s", self._used, self._limit)

    def _save_state_locked(self) -> None:
        if self._repository is None:
            return
        state = StoredQuotaState(
            used=self._used,
            daily_limit=self._limit,
            reset_at=self._reset_at.isoformat(),
            operations=[
                {
                    "kind": operation.kind,
                    "cost": operation.cost,
                    "timestamp": operation.timestamp.isoformat(),
                }
                for operation in self._operations
            ],
        )
        try:
            self._repository.save(state)
        except sqlite3.Error:
            LOGGER.warning("quota state save failed used=%s", self._used, exc_info=True)


def _operation_cost(kind: str, count: int) -> int:
    unit_cost = OPERATION_COSTS.get(kind)
    if unit_cost is None:
        raise ValueError(f"Unknown quota operation kind: {kind}")
    if count < 0:
        raise ValueError("count must not be negative")
    return unit_cost * count


def _operation_from_dict(raw_value: dict[str, object]) -> QuotaOperation | None:
    kind = raw_value.get("kind")
    cost = raw_value.get("cost")
    timestamp_raw = raw_value.get("timestamp")
    if not isinstance(kind, str) or not isinstance(cost, int):
        return None
    timestamp = parse_iso_datetime(timestamp_raw if isinstance(timestamp_raw, str) else None)
    if timestamp is None:
        return None
    return QuotaOperation(kind=kind, cost=cost, timestamp=timestamp)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def seconds_until(moment: datetime, *, now: datetime | None = None) -> int:
    current = now if now is not None else _utc_now()
    return max(0, math.ceil((moment - current).total_seconds()))
