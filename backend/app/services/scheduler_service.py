from __future__ import annotations

import errno
import fcntl
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.services.sync_orchestrator import CronSyncResult
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("subfeed.scheduler")


class AllUsersSyncRunner(Protocol):
    def run_sync_for_all_users(self) -> CronSyncResult:
        ...


class SchedulerService:
    """Background thread that syncs every user on a fixed cadence.

    A file lock under the data dir keeps one scheduler per data dir even when
    several server processes share it.
    """

    def __init__(
        self,
        sync_runner: AllUsersSyncRunner,
        poll_interval_seconds: int,
        *,
        run_on_start: bool = True,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._sync_runner = sync_runner
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._run_on_start = run_on_start
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False
        self._last_result: CronSyncResult | None = None

    @property
    def last_result(self) -> CronSyncResult | None:
        return self._last_result

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        if not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="subfeed-scheduler")
        self._thread.daemon = True
        self._thread.start()
        LOGGER.info(
            "scheduler started interval_seconds=%s run_on_start=%s",
            self._poll_interval_seconds,
            self._run_on_start,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        lock_path = self._lock_path
        lock_file: Any | None = None
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if lock_file is not None:
                try:
                    lock_file.close()
                except OSError:
                    pass
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "scheduler start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "scheduler lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("scheduler lock file metadata write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            try:
                lock_file.close()
            except OSError:
                pass
            self._lock_file = None
            self._lock_acquired = False

    def _run_loop(self) -> None:
        next_tick = time.monotonic()
        if not self._run_on_start:
            next_tick += self._poll_interval_seconds
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_tick:
                self._run_sync_tick()
                next_tick = time.monotonic() + self._poll_interval_seconds
            self._stop_event.wait(max(0.0, next_tick - time.monotonic()))

    def _run_sync_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type="sync_all")
        started_at = time.perf_counter()
        self._telemetry.emit("scheduler.tick.start", tick_id=tick_id, tick_type="sync_all")
        try:
            result = self._sync_runner.run_sync_for_all_users()
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                tick_type="sync_all",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduled sync of all users failed", exc_info=True)
        else:
            self._last_result = result
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                tick_type="sync_all",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                total_users=result.total_users,
                successful_syncs=result.successful_syncs,
                failed_syncs=result.failed_syncs,
                total_videos_synced=result.total_videos_synced,
            )
        finally:
            reset_contextvars(**tick_tokens)
