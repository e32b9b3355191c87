from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from backend.app.repositories.common import PersistenceError
from backend.app.repositories.video_repository import VideoRecord, VideoRepository
from backend.app.services.quota_ledger import QuotaLedger

LOGGER = logging.getLogger("subfeed.persister")

DEFAULT_PERSIST_BATCH_SIZE = 100


@dataclass(frozen=True)
class PersistResult:
    persisted: list[VideoRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    attempted: bool = False


class VideoPersister:
    def __init__(
        self,
        *,
        video_repository: VideoRepository,
        quota_ledger: QuotaLedger | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._video_repository = video_repository
        self._quota_ledger = quota_ledger
        self._sleep = sleep if sleep is not None else time.sleep

    def upsert_videos(
        self,
        records: Sequence[VideoRecord],
        *,
        batch_size: int = DEFAULT_PERSIST_BATCH_SIZE,
    ) -> PersistResult:
        """Insert records in batches, ignoring rows that already exist.

        A batch the store rejects is logged and skipped. `attempted` is false only
        when there was nothing to write.
        """
        if not records:
            return PersistResult()

        size = max(1, batch_size)
        persisted: list[VideoRecord] = []
        errors: list[str] = []
        for batch_index, batch_start in enumerate(range(0, len(records), size)):
            if batch_index > 0 and self._quota_ledger is not None:
                if self._quota_ledger.should_throttle():
                    self._sleep(self._quota_ledger.recommended_delay())

            batch = records[batch_start : batch_start + size]
            try:
                inserted = self._video_repository.insert_ignore_duplicates(batch)
            except PersistenceError as exc:
                LOGGER.warning(
                    "video batch skipped batch=%s size=%s", batch_index, len(batch), exc_info=True
                )
                errors.append(f"Batch {batch_index + 1} ({len(batch)} videos) failed: {exc}")
                continue
            persisted.extend(inserted)

        LOGGER.info(
            "videos persisted attempted=%s inserted=%s failed_batches=%s",
            len(records),
            len(persisted),
            len(errors),
        )
        return PersistResult(persisted=persisted, errors=errors, attempted=True)
