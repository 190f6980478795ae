"""
Bounded concurrent insertion.

A thread pool gated by a semaphore of fixed width runs one insert task per
record. Per-record failures are collected into the report; a FatalSyncError from
any task cancels the tasks that have not started yet and is re-raised from join().
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from billing_sync.core.errors import FatalSyncError, InsertError, RecordCancelled, RecordError

logger = logging.getLogger(__name__)

_ACQUIRE_POLL_SECONDS = 0.05


@dataclass
class InsertFailure:
    legacy_id: str
    error: str
    kind: str


@dataclass
class InsertReport:
    outcomes: Counter = field(default_factory=Counter)
    failed: list[InsertFailure] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    max_in_flight: int = 0
    cancelled: bool = False


class BoundedInserter:
    def __init__(self, width: int, *, run_timeout_seconds: float | None = None, cancel_event: threading.Event | None = None) -> None:
        self.width = max(1, int(width))
        self._semaphore = threading.BoundedSemaphore(self.width)
        self._executor = ThreadPoolExecutor(max_workers=self.width, thread_name_prefix='sync-insert')
        self._cancel = cancel_event or threading.Event()
        self._lock = threading.Lock()
        self._in_flight = 0
        self._futures: list[Future] = []
        self._fatal: BaseException | None = None
        self._report = InsertReport()
        self._timer: threading.Timer | None = None
        if run_timeout_seconds and run_timeout_seconds > 0:
            self._timer = threading.Timer(float(run_timeout_seconds), self.cancel)
            self._timer.daemon = True
            self._timer.start()

    def __enter__(self) -> 'BoundedInserter':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.cancel()
        self._shutdown()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        if not self._cancel.is_set():
            logger.warning('[sync] insert batch cancelled')
        self._cancel.set()

    def submit(self, legacy_id: str, task: Callable[[], str]) -> None:
        """Queue one insert; blocks while `width` tasks are already in flight."""
        while not self._semaphore.acquire(timeout=_ACQUIRE_POLL_SECONDS):
            if self._cancel.is_set():
                break
        else:
            self._futures.append(self._executor.submit(self._run, legacy_id, task))
            return
        self._record_failure(legacy_id, RecordCancelled('cancelled before start', legacy_id=legacy_id))

    def record_failure(self, legacy_id: str, exc: RecordError) -> None:
        """Failures raised while preparing a record, before any task was queued."""
        self._record_failure(legacy_id, exc)

    def record_outcome(self, legacy_id: str, outcome: str) -> None:
        with self._lock:
            self._report.outcomes[outcome] += 1

    def join(self) -> InsertReport:
        for fut in list(self._futures):
            fut.result()
        self._shutdown()
        if self._fatal is not None:
            raise self._fatal
        self._report.cancelled = self._cancel.is_set()
        return self._report

    def _shutdown(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._executor.shutdown(wait=True)

    def _run(self, legacy_id: str, task: Callable[[], str]) -> None:
        try:
            if self._cancel.is_set():
                raise RecordCancelled('cancelled before start', legacy_id=legacy_id)
            with self._lock:
                self._in_flight += 1
                self._report.max_in_flight = max(self._report.max_in_flight, self._in_flight)
            try:
                outcome = task()
            finally:
                with self._lock:
                    self._in_flight -= 1
            with self._lock:
                self._report.outcomes[outcome] += 1
                self._report.succeeded.append(legacy_id)
        except FatalSyncError as exc:
            with self._lock:
                if self._fatal is None:
                    self._fatal = exc
            self._cancel.set()
        except RecordError as exc:
            self._record_failure(legacy_id, exc)
        except Exception as exc:
            logger.exception('[sync] insert task for %s failed', legacy_id)
            self._record_failure(legacy_id, InsertError(str(exc), legacy_id=legacy_id))
        finally:
            self._semaphore.release()

    def _record_failure(self, legacy_id: str, exc: RecordError) -> None:
        with self._lock:
            self._report.failed.append(InsertFailure(legacy_id=str(legacy_id), error=str(exc), kind=type(exc).__name__))
