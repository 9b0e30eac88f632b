"""Run coordinator for the deduplication engine.

Two entry points are exposed to the scheduler:

* ``run_deduplication``: window selection, candidate generation,
  clustering, auto-merge, review-queue accounting.
* ``auto_merge_candidates``: clustering and auto-merge over existing
  APPROVED / PENDING candidates only, so a human approval can trigger the
  same merge path without regenerating candidates.

Per-pair and per-group failures end up in the returned summary; only
run-level infrastructure failures raise.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import structlog

from dealsift.config import Settings
from dealsift.dedup.candidates import generate_candidates, score_listing_against
from dealsift.dedup.clustering import build_groups
from dealsift.dedup.errors import (
    CandidateNotFoundError,
    DedupInfrastructureError,
    InvalidTransitionError,
    ListingNotFoundError,
)
from dealsift.dedup.merge import MergeResult, merge_groups
from dealsift.dedup.models import (
    CandidateStatus,
    DedupCandidate,
    DedupGroup,
    ReviewSignal,
    RunStatus,
    RunSummary,
    ScoredPair,
    check_transition,
)
from dealsift.dedup.repository import DedupRepository, ReviewNotifier, RunLog

logger = structlog.get_logger(__name__)

FULL_RUN_JOB = "dedup_scan"
MERGE_ONLY_JOB = "dedup_auto_merge"

# Only the first few errors are written to the run log
_RUN_LOG_ERROR_LIMIT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DedupEngine:
    """Coordinates one deduplication pass over a repository.

    Parameters
    ----------
    repository:
        Listing + candidate store with a transaction boundary and job lock.
    settings:
        Thresholds, window size, worker count and timeout.
    notifier:
        Receives the "candidates pending review" signal (optional).
    run_log:
        Receives a structured record of every run (optional).
    clock:
        Returns the current timezone-aware time; injectable for tests.
    """

    def __init__(
        self,
        repository: DedupRepository,
        settings: Settings | None = None,
        *,
        notifier: ReviewNotifier | None = None,
        run_log: RunLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if settings is None:
            from dealsift.config import get_settings
            settings = get_settings()
        self.repository = repository
        self.settings = settings
        self.notifier = notifier
        self.run_log = run_log
        self.clock = clock
        self._job_locks = {
            FULL_RUN_JOB: threading.Lock(),
            MERGE_ONLY_JOB: threading.Lock(),
        }

    # ------------------------------------------------------------------
    # Single-flight guard
    # ------------------------------------------------------------------

    @contextmanager
    def _single_flight(self, job_name: str) -> Iterator[bool]:
        """Yield True if this call owns *job_name*, False if one is running."""
        local = self._job_locks[job_name]
        if not local.acquire(blocking=False):
            yield False
            return
        try:
            try:
                acquired = self.repository.try_acquire_job_lock(job_name)
            except Exception as exc:
                msg = f"Could not acquire job lock for {job_name}: {exc}"
                raise DedupInfrastructureError(msg) from exc
            if not acquired:
                yield False
                return
            try:
                yield True
            finally:
                try:
                    self.repository.release_job_lock(job_name)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("job_lock_release_failed", job=job_name, error=str(exc))
        finally:
            local.release()

    def _deadline(self) -> float | None:
        if self.settings.run_timeout_seconds is None:
            return None
        return time.monotonic() + self.settings.run_timeout_seconds

    # ------------------------------------------------------------------
    # Run log helpers
    # ------------------------------------------------------------------

    def _start_run_log(self, job_name: str, errors: list[str]) -> str | None:
        if self.run_log is None:
            return None
        try:
            return self.run_log.start_run(job_name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("run_log_start_failed", job=job_name, error=str(exc))
            errors.append(f"Run log error: {exc}")
            return None

    def _finish_run_log(self, run_id: str | None, summary: RunSummary) -> None:
        if self.run_log is None or run_id is None:
            return
        record = RunSummary(
            candidates_found=summary.candidates_found,
            groups_created=summary.groups_created,
            auto_merged=summary.auto_merged,
            pending_review=summary.pending_review,
            errors=summary.errors[:_RUN_LOG_ERROR_LIMIT],
            status=summary.status,
            timed_out=summary.timed_out,
        )
        try:
            self.run_log.finish_run(run_id, record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("run_log_finish_failed", run_id=run_id, error=str(exc))

    def _fail_run(
        self,
        job_name: str,
        run_id: str | None,
        summary: RunSummary,
        message: str,
    ) -> None:
        summary.errors.append(message)
        summary.status = RunStatus.ERROR
        logger.error("dedup_run_failed", job=job_name, error=message)
        self._finish_run_log(run_id, summary)

    # ------------------------------------------------------------------
    # Shared cluster + merge step
    # ------------------------------------------------------------------

    def _cluster_and_merge(
        self, deadline: float | None
    ) -> tuple[list[DedupGroup], MergeResult]:
        """Cluster open candidates and auto-merge eligible groups.

        REJECTED candidates are loaded alongside the open ones so a group
        holding a rejected pair is kept for review.
        """
        try:
            candidates = self.repository.list_by_status(
                [CandidateStatus.PENDING, CandidateStatus.APPROVED, CandidateStatus.REJECTED]
            )
            listing_ids = {
                listing_id
                for c in candidates
                if c.status.is_open
                for listing_id in (c.listing_a_id, c.listing_b_id)
            }
            listings = self.repository.get_listings(sorted(listing_ids)) if listing_ids else []
        except Exception as exc:
            msg = f"Could not load open candidates: {exc}"
            raise DedupInfrastructureError(msg) from exc

        groups = build_groups(
            candidates,
            {l.id: l for l in listings},
            self.settings.review_threshold,
        )
        merge_result = merge_groups(
            self.repository,
            groups,
            self.settings.auto_merge_threshold,
            deadline=deadline,
        )
        return groups, merge_result

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_deduplication(self, window_days: int | None = None) -> RunSummary:
        """Run a full pass over listings seen in the last *window_days* days.

        Returns
        -------
        RunSummary
            Counts plus collected per-pair / per-group error messages.  A
            concurrent invocation returns a summary with status ``skipped``.

        Raises
        ------
        DedupInfrastructureError
            If the listing window or open candidates cannot be read, or the
            run fails unexpectedly; the run log is closed as ``error`` first.
        """
        days = window_days if window_days is not None else self.settings.window_days
        summary = RunSummary()

        with self._single_flight(FULL_RUN_JOB) as owned:
            if not owned:
                logger.warning("dedup_run_skipped", job=FULL_RUN_JOB, reason="already_running")
                summary.status = RunStatus.SKIPPED
                return summary

            run_id = self._start_run_log(FULL_RUN_JOB, summary.errors)
            deadline = self._deadline()
            now = self.clock()

            try:
                try:
                    listings = self.repository.list_active_since(now - timedelta(days=days))
                except Exception as exc:
                    msg = f"Could not read listing window: {exc}"
                    raise DedupInfrastructureError(msg, {"window_days": days}) from exc

                generation = generate_candidates(
                    self.repository, listings, self.settings, now=now, deadline=deadline
                )
                summary.candidates_found = generation.candidates_found
                summary.errors.extend(generation.errors)
                summary.timed_out = generation.timed_out

                if not summary.timed_out:
                    groups, merge_result = self._cluster_and_merge(deadline)
                    # Groups left over from earlier runs are not counted again
                    summary.groups_created = sum(
                        1
                        for g in groups
                        if any(e.id in generation.created_ids for e in g.edges)
                    )
                    summary.auto_merged = merge_result.merged
                    summary.errors.extend(merge_result.errors)
                    summary.timed_out = merge_result.timed_out

                summary.pending_review = self._count_pending(summary.errors)
            except DedupInfrastructureError as exc:
                self._fail_run(
                    FULL_RUN_JOB, run_id, summary, f"Fatal deduplication error: {exc.message}"
                )
                raise
            except Exception as exc:
                msg = f"Fatal deduplication error: {exc}"
                self._fail_run(FULL_RUN_JOB, run_id, summary, msg)
                raise DedupInfrastructureError(msg, {"window_days": days}) from exc

            if summary.timed_out:
                summary.errors.append(
                    f"Run timed out after {self.settings.run_timeout_seconds}s; "
                    "remaining work deferred to the next run"
                )
            self._emit_review_signal(summary)
            summary.status = RunStatus.PARTIAL if summary.errors else RunStatus.SUCCESS
            self._finish_run_log(run_id, summary)

        logger.info("dedup_run_complete", window_days=days, **summary.to_dict())
        return summary

    def auto_merge_candidates(self) -> int:
        """Cluster existing open candidates and merge auto-mergeable groups.

        Returns the number of groups merged (0 when another merge-only run
        is in flight).

        Raises
        ------
        DedupInfrastructureError
            If open candidates or their listings cannot be read.
        """
        with self._single_flight(MERGE_ONLY_JOB) as owned:
            if not owned:
                logger.warning("dedup_run_skipped", job=MERGE_ONLY_JOB, reason="already_running")
                return 0

            summary = RunSummary()
            run_id = self._start_run_log(MERGE_ONLY_JOB, summary.errors)
            try:
                _, merge_result = self._cluster_and_merge(self._deadline())
            except DedupInfrastructureError as exc:
                self._fail_run(
                    MERGE_ONLY_JOB, run_id, summary, f"Fatal auto-merge error: {exc.message}"
                )
                raise
            except Exception as exc:
                msg = f"Fatal auto-merge error: {exc}"
                self._fail_run(MERGE_ONLY_JOB, run_id, summary, msg)
                raise DedupInfrastructureError(msg) from exc

            # No candidates are created here, so only merged groups count
            summary.groups_created = merge_result.merged
            summary.auto_merged = merge_result.merged
            summary.errors.extend(merge_result.errors)
            summary.timed_out = merge_result.timed_out
            summary.status = RunStatus.PARTIAL if summary.errors else RunStatus.SUCCESS
            self._finish_run_log(run_id, summary)

        logger.info("dedup_auto_merge_complete", **summary.to_dict())
        return merge_result.merged

    # ------------------------------------------------------------------
    # Review-side helpers
    # ------------------------------------------------------------------

    def find_duplicates_for_listing(
        self,
        listing_id: str,
        window_days: int | None = None,
    ) -> list[ScoredPair]:
        """Score one listing against the current window without persisting.

        Pairs below the admission threshold are omitted; best match first.
        """
        days = window_days if window_days is not None else self.settings.window_days
        found = self.repository.get_listings([listing_id])
        if not found:
            msg = f"Listing not found: {listing_id}"
            raise ListingNotFoundError(msg)

        window = self.repository.list_active_since(self.clock() - timedelta(days=days))
        return score_listing_against(
            found[0],
            window,
            threshold=self.settings.admission_threshold,
            allow_same_platform=self.settings.allow_same_platform,
        )

    def resolve_candidate(
        self,
        candidate_id: str,
        approve: bool,
        resolved_by: str = "user",
    ) -> DedupCandidate:
        """Record a reviewer decision on a PENDING candidate.

        Approved candidates are picked up by the next
        ``auto_merge_candidates`` run.  Raises ``InvalidTransitionError`` if
        the candidate is no longer PENDING, including when another reviewer
        resolved it after it was read.
        """
        candidate = self.repository.get_candidate(candidate_id)
        if candidate is None:
            msg = f"Dedup candidate not found: {candidate_id}"
            raise CandidateNotFoundError(msg)

        target = CandidateStatus.APPROVED if approve else CandidateStatus.REJECTED
        check_transition(candidate.status, target)
        if self.repository.update_status([candidate.id], target, resolved_by) == 0:
            msg = f"Dedup candidate {candidate.id} was resolved concurrently"
            raise InvalidTransitionError(msg, {"candidate_id": candidate.id})

        candidate.status = target
        candidate.resolved_by = resolved_by
        candidate.resolved_at = self.clock()
        logger.info(
            "candidate_resolved",
            candidate_id=candidate.id,
            status=target.value,
            resolved_by=resolved_by,
        )
        return candidate

    # ------------------------------------------------------------------
    # Review accounting
    # ------------------------------------------------------------------

    def _count_pending(self, errors: list[str]) -> int:
        try:
            return self.repository.count_by_status(CandidateStatus.PENDING)
        except Exception as exc:  # noqa: BLE001
            logger.warning("pending_count_failed", error=str(exc))
            errors.append(f"Could not count pending candidates: {exc}")
            return 0

    def _emit_review_signal(self, summary: RunSummary) -> None:
        pending = summary.pending_review
        if self.notifier is None or pending <= 0 or pending <= summary.auto_merged:
            return
        signal = ReviewSignal(
            pending_review=pending,
            candidates_found=summary.candidates_found,
            auto_merged=summary.auto_merged,
            high_priority=pending > self.settings.high_priority_pending,
        )
        try:
            self.notifier.notify_pending_review(signal)
        except Exception as exc:  # noqa: BLE001
            logger.warning("review_notification_failed", pending=pending, error=str(exc))
            summary.errors.append(f"Notification error: {exc}")
