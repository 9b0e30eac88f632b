"""Trigger queue between the rest of the system and the dedup engine.

Update handlers elsewhere (imports, scrapes, manual edits) publish a
``DedupRequest`` instead of invoking the engine inline.  The queue is
bounded, coalesces requests of the same kind that are still waiting, and
retries run-level infrastructure failures with exponential backoff.
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from dealsift.dedup.engine import DedupEngine
from dealsift.dedup.errors import DedupInfrastructureError
from dealsift.dedup.models import RunSummary

logger = structlog.get_logger(__name__)


class DedupRequestKind(str, Enum):
    FULL_RUN = "full_run"
    MERGE_ONLY = "merge_only"


@dataclass(frozen=True)
class DedupRequest:
    kind: DedupRequestKind
    reason: str = ""
    window_days: int | None = None


class DedupTriggerQueue:
    """Bounded, coalescing request queue drained by a single worker."""

    def __init__(
        self,
        engine: DedupEngine,
        *,
        maxsize: int = 16,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._queue: queue.Queue[DedupRequest] = queue.Queue(maxsize=maxsize)
        self._pending: set[DedupRequestKind] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, request: DedupRequest) -> bool:
        """Enqueue *request*.

        Returns True if the request is queued or folded into an identical
        waiting request, False if the queue is full.
        """
        with self._lock:
            if request.kind in self._pending:
                logger.info("dedup_request_coalesced", kind=request.kind.value, reason=request.reason)
                return True
            try:
                self._queue.put_nowait(request)
            except queue.Full:
                logger.warning("dedup_request_dropped", kind=request.kind.value, reason=request.reason)
                return False
            self._pending.add(request.kind)
        return True

    def process_next(self, timeout: float | None = None) -> RunSummary | int | None:
        """Run the next waiting request, retrying infrastructure failures.

        Returns the engine result, or None if nothing was waiting or every
        attempt failed.
        """
        try:
            request = self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

        with self._lock:
            self._pending.discard(request.kind)

        try:
            for attempt in range(self.max_retries + 1):
                try:
                    return self._dispatch(request)
                except DedupInfrastructureError as exc:
                    if attempt >= self.max_retries:
                        logger.error(
                            "dedup_request_failed",
                            kind=request.kind.value,
                            attempts=attempt + 1,
                            error=exc.message,
                        )
                        return None
                    delay = self.backoff_seconds * (2 ** attempt)
                    logger.warning(
                        "dedup_request_retrying",
                        kind=request.kind.value,
                        attempt=attempt + 1,
                        delay=delay,
                        error=exc.message,
                    )
                    self._sleep(delay)
            return None
        finally:
            self._queue.task_done()

    def _dispatch(self, request: DedupRequest) -> RunSummary | int:
        if request.kind is DedupRequestKind.MERGE_ONLY:
            return self.engine.auto_merge_candidates()
        return self.engine.run_deduplication(request.window_days)

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="dedup-trigger", daemon=True)
        self._worker.start()
        logger.info("dedup_trigger_worker_started")

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        logger.info("dedup_trigger_worker_stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.process_next(timeout=0.5)
            except Exception:  # noqa: BLE001
                logger.exception("dedup_trigger_worker_error")
