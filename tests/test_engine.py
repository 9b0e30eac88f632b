"""End-to-end tests for the dedup run coordinator against the in-memory repository."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from dealsift.config import Settings
from dealsift.dedup.engine import FULL_RUN_JOB, MERGE_ONLY_JOB, DedupEngine
from dealsift.dedup.errors import (
    CandidateNotFoundError,
    DedupInfrastructureError,
    InvalidTransitionError,
    ListingNotFoundError,
)
from dealsift.dedup.models import CandidateStatus, ReviewSignal, RunStatus
from tests.factories import NOW, InMemoryRepository, make_candidate, make_listing


def _engine(repo, settings=None, **kwargs) -> DedupEngine:
    settings = settings or Settings(database_url="", max_workers=2)
    return DedupEngine(repo, settings, clock=lambda: NOW, **kwargs)


def _review_pair():
    """Same business name with an extra word and a 10% price gap: scores ~0.77."""
    return [
        make_listing(
            "rv-a", "bizbuysell", "Joe's Plumbing", state="CO", category="Plumbing",
            asking_price=450_000,
        ),
        make_listing(
            "rv-b", "bizquest", "Joe's Plumbing & Heating", state="CO", category="Plumbing",
            asking_price=500_000,
        ),
    ]


# =========================================================================
# run_deduplication
# =========================================================================


class TestRunDeduplication:
    def test_cross_platform_duplicate_is_auto_merged(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        summary = _engine(repo).run_deduplication()

        assert summary.status is RunStatus.SUCCESS
        assert summary.candidates_found == 1
        assert summary.groups_created == 1
        assert summary.auto_merged == 1
        assert summary.pending_review == 0
        assert summary.errors == []

        assert repo.listings["lst-a"].superseded_by is None
        assert repo.listings["lst-b"].superseded_by == "lst-a"
        assert repo.listings["lst-c"].superseded_by is None
        assert repo.statuses() == {("lst-a", "lst-b"): CandidateStatus.MERGED}

    def test_second_run_finds_nothing_new(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        engine = _engine(repo)
        engine.run_deduplication()

        second = engine.run_deduplication()

        assert second.status is RunStatus.SUCCESS
        assert second.candidates_found == 0
        assert second.groups_created == 0
        assert second.auto_merged == 0
        assert len(repo.candidates) == 1

    def test_rerun_does_not_duplicate_pending_candidates(self):
        repo = InMemoryRepository(_review_pair())
        engine = _engine(repo)

        first = engine.run_deduplication()
        second = engine.run_deduplication()

        assert first.candidates_found == 1
        assert first.auto_merged == 0
        assert first.pending_review == 1
        assert second.candidates_found == 0
        assert second.pending_review == 1
        assert len(repo.candidates) == 1

    def test_review_group_is_counted_only_by_the_run_that_found_it(self):
        repo = InMemoryRepository(_review_pair())
        engine = _engine(repo)

        first = engine.run_deduplication()
        second = engine.run_deduplication()

        assert first.groups_created == 1
        assert second.groups_created == 0
        assert second.pending_review == 1

    def test_infinite_price_does_not_abort_run(self, joes_plumbing_listings):
        joes_plumbing_listings[1].asking_price = float("inf")
        repo = InMemoryRepository(joes_plumbing_listings)

        summary = _engine(repo).run_deduplication()

        assert summary.status is RunStatus.SUCCESS
        assert summary.auto_merged == 1
        assert repo.listings["lst-b"].superseded_by == "lst-a"

    def test_listings_outside_window_are_ignored(self, joes_plumbing_listings):
        joes_plumbing_listings[1].last_seen = NOW - timedelta(days=30)
        repo = InMemoryRepository(joes_plumbing_listings)

        summary = _engine(repo).run_deduplication(window_days=7)

        assert summary.candidates_found == 0
        assert repo.candidates == {}

    def test_review_signal_sent_for_pending_candidates(self):
        repo = InMemoryRepository(_review_pair())
        notifier = MagicMock()

        _engine(repo, notifier=notifier).run_deduplication()

        notifier.notify_pending_review.assert_called_once_with(
            ReviewSignal(pending_review=1, candidates_found=1, auto_merged=0, high_priority=False)
        )

    def test_review_signal_high_priority(self):
        repo = InMemoryRepository(_review_pair())
        notifier = MagicMock()
        settings = Settings(database_url="", max_workers=2, high_priority_pending=0)

        _engine(repo, settings, notifier=notifier).run_deduplication()

        (signal,) = notifier.notify_pending_review.call_args.args
        assert signal.high_priority is True

    def test_no_signal_when_everything_merged(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        notifier = MagicMock()

        _engine(repo, notifier=notifier).run_deduplication()

        notifier.notify_pending_review.assert_not_called()

    def test_notifier_failure_makes_run_partial(self):
        repo = InMemoryRepository(_review_pair())
        notifier = MagicMock()
        notifier.notify_pending_review.side_effect = RuntimeError("smtp down")

        summary = _engine(repo, notifier=notifier).run_deduplication()

        assert summary.status is RunStatus.PARTIAL
        assert any("Notification error" in e for e in summary.errors)

    def test_run_log_records_outcome(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        run_log = MagicMock()
        run_log.start_run.return_value = "run-1"

        _engine(repo, run_log=run_log).run_deduplication()

        run_log.start_run.assert_called_once_with(FULL_RUN_JOB)
        run_id, record = run_log.finish_run.call_args.args
        assert run_id == "run-1"
        assert record.status is RunStatus.SUCCESS
        assert record.auto_merged == 1

    def test_run_log_keeps_first_five_errors(self):
        listings = [make_listing(f"l{i}", f"p{i}", "Oak Dental", state="TX") for i in range(8)]
        repo = InMemoryRepository(listings)
        repo.fail_insert_for = {("l0", f"l{i}") for i in range(1, 8)}
        run_log = MagicMock()
        run_log.start_run.return_value = "run-1"

        summary = _engine(repo, run_log=run_log).run_deduplication()

        assert summary.status is RunStatus.PARTIAL
        assert len(summary.errors) == 7
        _, record = run_log.finish_run.call_args.args
        assert len(record.errors) == 5
        # The remaining pairs still cluster and merge
        assert summary.auto_merged == 1
        assert not repo.listings["l0"].is_superseded

    def test_timeout_defers_clustering(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        settings = Settings(database_url="", max_workers=2, run_timeout_seconds=0.0)

        summary = _engine(repo, settings).run_deduplication()

        assert summary.timed_out is True
        assert summary.status is RunStatus.PARTIAL
        assert summary.auto_merged == 0
        assert any("timed out" in e for e in summary.errors)


class TestRunFailures:
    def test_window_read_failure_raises(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        repo.fail_window = True
        run_log = MagicMock()
        run_log.start_run.return_value = "run-1"

        with pytest.raises(DedupInfrastructureError, match="listing window"):
            _engine(repo, run_log=run_log).run_deduplication()

        _, record = run_log.finish_run.call_args.args
        assert record.status is RunStatus.ERROR
        assert FULL_RUN_JOB not in repo.held_locks

    def test_candidate_read_failure_raises(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        repo.fail_candidate_listing = True

        with pytest.raises(DedupInfrastructureError):
            _engine(repo).run_deduplication()

    def test_unexpected_failure_closes_run_log(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        run_log = MagicMock()
        run_log.start_run.return_value = "run-1"

        with patch(
            "dealsift.dedup.engine.generate_candidates",
            side_effect=RuntimeError("worker pool crashed"),
        ):
            with pytest.raises(DedupInfrastructureError, match="worker pool crashed") as exc_info:
                _engine(repo, run_log=run_log).run_deduplication()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        _, record = run_log.finish_run.call_args.args
        assert record.status is RunStatus.ERROR
        assert record.errors == ["Fatal deduplication error: worker pool crashed"]
        assert repo.held_locks == set()

    def test_unexpected_merge_only_failure_closes_run_log(self):
        repo = InMemoryRepository(make_listing(i, f"p-{i}", "Oak Dental") for i in ("a", "b"))
        repo.add_candidates(make_candidate("a", "b", 0.99))
        run_log = MagicMock()
        run_log.start_run.return_value = "run-1"

        with patch("dealsift.dedup.engine.merge_groups", side_effect=KeyError("a")):
            with pytest.raises(DedupInfrastructureError, match="Fatal auto-merge error"):
                _engine(repo, run_log=run_log).auto_merge_candidates()

        run_log.start_run.assert_called_once_with(MERGE_ONLY_JOB)
        _, record = run_log.finish_run.call_args.args
        assert record.status is RunStatus.ERROR
        assert MERGE_ONLY_JOB not in repo.held_locks


class TestSingleFlight:
    def test_concurrent_full_run_is_skipped(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        repo.held_locks.add(FULL_RUN_JOB)

        summary = _engine(repo).run_deduplication()

        assert summary.status is RunStatus.SKIPPED
        assert repo.candidates == {}
        # The lock belongs to the other holder
        assert FULL_RUN_JOB in repo.held_locks

    def test_in_process_overlap_is_skipped(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        engine = _engine(repo)
        engine._job_locks[FULL_RUN_JOB].acquire()
        try:
            summary = engine.run_deduplication()
        finally:
            engine._job_locks[FULL_RUN_JOB].release()

        assert summary.status is RunStatus.SKIPPED

    def test_concurrent_merge_only_returns_zero(self):
        repo = InMemoryRepository(make_listing(i, f"p-{i}", "Oak Dental") for i in ("a", "b"))
        repo.add_candidates(make_candidate("a", "b", 0.99))
        repo.held_locks.add(MERGE_ONLY_JOB)

        assert _engine(repo).auto_merge_candidates() == 0
        assert not repo.listings["b"].is_superseded

    def test_lock_released_after_run(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)
        _engine(repo).run_deduplication()
        assert repo.held_locks == set()


# =========================================================================
# auto_merge_candidates and reviewer decisions
# =========================================================================


class TestAutoMergeCandidates:
    def test_weak_edge_keeps_group_for_review(self):
        repo = InMemoryRepository(make_listing(i, f"p-{i}", "Oak Dental") for i in ("a", "b", "c"))
        repo.add_candidates(make_candidate("a", "b", 0.99), make_candidate("b", "c", 0.80))

        assert _engine(repo).auto_merge_candidates() == 0
        assert set(repo.statuses().values()) == {CandidateStatus.PENDING}
        assert not any(l.is_superseded for l in repo.listings.values())

    def test_rejected_pair_blocks_transitive_merge(self):
        repo = InMemoryRepository(make_listing(i, f"p-{i}", "Oak Dental") for i in ("a", "b", "c"))
        repo.add_candidates(
            make_candidate("a", "b", 0.95),
            make_candidate("a", "c", 0.95),
            make_candidate("b", "c", 0.80, CandidateStatus.REJECTED),
        )

        assert _engine(repo).auto_merge_candidates() == 0
        assert not any(l.is_superseded for l in repo.listings.values())
        assert repo.statuses() == {
            ("a", "b"): CandidateStatus.PENDING,
            ("a", "c"): CandidateStatus.PENDING,
            ("b", "c"): CandidateStatus.REJECTED,
        }

    def test_run_log_counts_only_merged_groups(self):
        repo = InMemoryRepository(make_listing(i, f"p-{i}", "Oak Dental") for i in "abcd")
        repo.add_candidates(make_candidate("a", "b", 0.99), make_candidate("c", "d", 0.70))
        run_log = MagicMock()
        run_log.start_run.return_value = "run-1"

        assert _engine(repo, run_log=run_log).auto_merge_candidates() == 1

        _, record = run_log.finish_run.call_args.args
        assert record.groups_created == 1
        assert record.auto_merged == 1

    def test_approved_candidate_is_merged(self):
        repo = InMemoryRepository(make_listing(i, f"p-{i}", "Oak Dental") for i in ("a", "b"))
        candidate = make_candidate("a", "b", 0.70)
        repo.add_candidates(candidate)
        engine = _engine(repo)

        resolved = engine.resolve_candidate(candidate.id, approve=True, resolved_by="alice")
        merged = engine.auto_merge_candidates()

        assert resolved.status is CandidateStatus.APPROVED
        assert resolved.resolved_by == "alice"
        assert merged == 1
        assert repo.listings["b"].superseded_by == "a"
        assert repo.statuses()[("a", "b")] is CandidateStatus.MERGED

    def test_read_failure_raises(self):
        repo = InMemoryRepository()
        repo.fail_candidate_listing = True

        with pytest.raises(DedupInfrastructureError):
            _engine(repo).auto_merge_candidates()
        assert MERGE_ONLY_JOB not in repo.held_locks


class TestResolveCandidate:
    def test_reject(self):
        repo = InMemoryRepository()
        candidate = make_candidate("a", "b", 0.7)
        repo.add_candidates(candidate)

        resolved = _engine(repo).resolve_candidate(candidate.id, approve=False)

        assert resolved.status is CandidateStatus.REJECTED
        assert repo.candidates[candidate.id].status is CandidateStatus.REJECTED
        assert repo.candidates[candidate.id].resolved_by == "user"

    def test_closed_candidate_cannot_be_reopened(self):
        repo = InMemoryRepository()
        candidate = make_candidate("a", "b", 0.7, CandidateStatus.REJECTED)
        repo.add_candidates(candidate)

        with pytest.raises(InvalidTransitionError):
            _engine(repo).resolve_candidate(candidate.id, approve=True)

    def test_decision_lost_to_concurrent_reviewer(self):
        repo = InMemoryRepository()
        repo.add_candidates(make_candidate("a", "b", 0.7, CandidateStatus.REJECTED))
        stale = make_candidate("a", "b", 0.7)

        with patch.object(repo, "get_candidate", return_value=stale):
            with pytest.raises(InvalidTransitionError, match="resolved concurrently"):
                _engine(repo).resolve_candidate(stale.id, approve=True, resolved_by="bob")

        assert repo.candidates[stale.id].status is CandidateStatus.REJECTED
        assert repo.candidates[stale.id].resolved_by is None

    def test_unknown_candidate(self):
        with pytest.raises(CandidateNotFoundError):
            _engine(InMemoryRepository()).resolve_candidate("missing", approve=True)


class TestFindDuplicatesForListing:
    def test_scores_without_persisting(self, joes_plumbing_listings):
        repo = InMemoryRepository(joes_plumbing_listings)

        matches = _engine(repo).find_duplicates_for_listing("lst-b")

        assert [(m.listing_a_id, m.listing_b_id) for m in matches] == [("lst-a", "lst-b")]
        assert matches[0].score >= 0.92
        assert repo.candidates == {}

    def test_unknown_listing(self):
        with pytest.raises(ListingNotFoundError):
            _engine(InMemoryRepository()).find_duplicates_for_listing("missing")
