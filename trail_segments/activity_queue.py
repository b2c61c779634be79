"""Background queue for CPU-bound activity processing.

Ingestion callers hand an ``ActivitySubmission`` to ``ActivityQueue.submit``
and return immediately. Work runs on a fixed-size thread pool; each finished
unit pushes its outcome onto a completion channel drained by a dispatcher
thread, which clears the in-flight entry and resolves the caller's future.
"""

from __future__ import annotations

import asyncio
import logging
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from cachetools import LRUCache

from .config import (
    QUEUE_BACKOFF_MAX_SECONDS,
    QUEUE_MAX_ATTEMPTS,
    QUEUE_MAX_WORKERS,
    QUEUE_RETRY_BACKOFF_SECONDS,
)
from .errors import RETRYABLE_ERRORS
from .geometry.validation import validate_track
from .models import ActivitySubmission, BackfillResult, ProcessingResult, ProcessingStatus
from .processor import ActivityProcessor

_STOP = object()

SEGMENT_KEY_PREFIX = "segment:"


@dataclass(slots=True)
class ProcessingOutcome:
    key: str
    status: ProcessingStatus
    result: Optional[Union[ProcessingResult, BackfillResult]] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ProcessingStatus.PROCESSED


CompletionCallback = Callable[[ProcessingOutcome], None]


def _default_workers() -> int:
    if QUEUE_MAX_WORKERS > 0:
        return QUEUE_MAX_WORKERS
    return os.cpu_count() or 1


class ActivityQueue:
    """Deduplicating thread-pool queue for activity and backfill work."""

    def __init__(
        self,
        processor: ActivityProcessor,
        *,
        max_workers: Optional[int] = None,
        max_attempts: int = QUEUE_MAX_ATTEMPTS,
        retry_backoff_s: float = QUEUE_RETRY_BACKOFF_SECONDS,
        backoff_max_s: float = QUEUE_BACKOFF_MAX_SECONDS,
        on_complete: Optional[CompletionCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.processor = processor
        self.max_workers = max_workers or _default_workers()
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_s = retry_backoff_s
        self.backoff_max_s = backoff_max_s
        self._on_complete = on_complete
        self._sleep = sleep
        self._log = logging.getLogger(self.__class__.__name__)

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="activity-worker"
        )
        self._lock = threading.RLock()
        self._in_flight: Dict[str, Future] = {}
        self._recent: "LRUCache[str, Future]" = LRUCache(maxsize=1024)
        self._completions: "queue.SimpleQueue[Any]" = queue.SimpleQueue()
        self._closed = False
        self._dispatcher = threading.Thread(
            target=self._dispatch_completions, name="activity-dispatcher", daemon=True
        )
        self._dispatcher.start()

    def __enter__(self) -> "ActivityQueue":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown(wait=True)

    def submit(self, submission: ActivitySubmission) -> Future:
        """Enqueue an activity, returning a future resolved with its outcome.

        Validation runs on the calling thread; invalid tracks raise here and
        nothing is enqueued. Resubmitting an activity that is still in flight
        returns the existing future.
        """

        validate_track(submission.points)
        return self._enqueue(
            submission.activity_id, lambda: self._run_activity(submission)
        )

    def submit_segment_backfill(self, segment_id: str) -> Future:
        """Enqueue the retroactive match of a new segment against stored tracks."""

        key = f"{SEGMENT_KEY_PREFIX}{segment_id}"
        return self._enqueue(key, lambda: self._run_backfill(key, segment_id))

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def future_for(self, key: str) -> Optional[Future]:
        with self._lock:
            return self._in_flight.get(key) or self._recent.get(key)

    async def wait_async(self, key: str) -> ProcessingOutcome:
        """Await the outcome of ``key`` without blocking the event loop."""

        future = self.future_for(key)
        if future is None:
            raise KeyError(f"No submitted work for {key!r}")
        return await asyncio.wrap_future(future)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if wait:
            self._stop_after_workers()
            self._dispatcher.join()
        else:
            # Units still running must be able to resolve their futures.
            threading.Thread(
                target=self._stop_after_workers, name="activity-queue-stop", daemon=True
            ).start()
        self._log.info("Activity queue shut down")

    def _stop_after_workers(self) -> None:
        self._executor.shutdown(wait=True)
        self._completions.put(_STOP)

    def _enqueue(self, key: str, work: Callable[[], ProcessingOutcome]) -> Future:
        with self._lock:
            if self._closed:
                raise RuntimeError("ActivityQueue has been shut down")
            existing = self._in_flight.get(key)
            if existing is not None:
                self._log.debug("%s already in flight; ignoring resubmission", key)
                return existing
            future: Future = Future()
            self._in_flight[key] = future
            self._executor.submit(self._worker, key, work)
        self._log.info("Queued %s", key)
        return future

    def _worker(self, key: str, work: Callable[[], ProcessingOutcome]) -> None:
        try:
            outcome = work()
        except Exception as exc:  # noqa: BLE001
            self._log.exception("Unhandled failure processing %s", key)
            outcome = ProcessingOutcome(key, ProcessingStatus.FAILED, error=str(exc))
        self._completions.put((key, outcome))

    def _run_activity(self, submission: ActivitySubmission) -> ProcessingOutcome:
        key = submission.activity_id
        self.processor.mark_processing(submission)
        outcome = self._with_retries(key, lambda: self.processor.process(submission))
        if not outcome.ok:
            self.processor.mark_failed(submission, outcome.error or "unknown error")
        return outcome

    def _run_backfill(self, key: str, segment_id: str) -> ProcessingOutcome:
        return self._with_retries(key, lambda: self.processor.backfill_segment(segment_id))

    def _with_retries(
        self, key: str, call: Callable[[], Union[ProcessingResult, BackfillResult]]
    ) -> ProcessingOutcome:
        attempts = 0
        backoff = self.retry_backoff_s
        while True:
            attempts += 1
            try:
                result = call()
            except RETRYABLE_ERRORS as exc:
                if attempts < self.max_attempts:
                    self._log.warning(
                        "%s attempt %d failed (%s: %s); retrying in %.1fs",
                        key,
                        attempts,
                        exc.__class__.__name__,
                        exc,
                        backoff,
                    )
                    self._sleep(backoff)
                    backoff = min(backoff * 2, self.backoff_max_s)
                    continue
                self._log.error("%s failed after %d attempts: %s", key, attempts, exc)
                return ProcessingOutcome(
                    key, ProcessingStatus.FAILED, error=f"{exc.__class__.__name__}: {exc}", attempts=attempts
                )
            except Exception as exc:  # noqa: BLE001
                self._log.error("%s failed: %s", key, exc, exc_info=True)
                return ProcessingOutcome(
                    key, ProcessingStatus.FAILED, error=f"{exc.__class__.__name__}: {exc}", attempts=attempts
                )
            return ProcessingOutcome(key, ProcessingStatus.PROCESSED, result=result, attempts=attempts)

    def _dispatch_completions(self) -> None:
        while True:
            item = self._completions.get()
            if item is _STOP:
                return
            key, outcome = item
            with self._lock:
                future = self._in_flight.pop(key, None)
                if future is not None:
                    self._recent[key] = future
            if future is None:
                continue
            future.set_result(outcome)
            if self._on_complete is not None:
                try:
                    self._on_complete(outcome)
                except Exception:  # noqa: BLE001
                    self._log.exception("Completion callback failed for %s", key)


__all__ = ["ActivityQueue", "ProcessingOutcome", "SEGMENT_KEY_PREFIX"]
