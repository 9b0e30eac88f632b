"""Collaborator interfaces consumed by the deduplication engine.

The engine never talks to a database client directly; it is handed a
``DedupRepository`` (listing store + candidate store + transaction and job
lock) and optional notification / run-log sinks.  ``dealsift.dedup.postgres``
provides the PostgreSQL implementations; tests use an in-memory fake.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from dealsift.dedup.models import (
    CandidateStatus,
    DedupCandidate,
    Listing,
    ReviewSignal,
    RunSummary,
)


class ListingStore(Protocol):
    """Read access to listings plus the narrow write access merges need."""

    def list_active_since(
        self, cutoff: datetime, platform: str | None = None
    ) -> list[Listing]:
        """Listings with ``last_seen >= cutoff`` that are not superseded."""
        ...

    def get_listings(self, listing_ids: Iterable[str]) -> list[Listing]: ...

    def lock_listings(self, listing_ids: Iterable[str]) -> list[Listing]:
        """Re-fetch listings, locking their rows for the current transaction."""
        ...

    def reassign_references(self, from_listing_id: str, to_listing_id: str) -> int:
        """Point opportunities, documents, notes and sources at another listing."""
        ...

    def mark_superseded(self, listing_id: str, canonical_id: str) -> None: ...


class CandidateStore(Protocol):
    def insert_if_absent(self, candidate: DedupCandidate) -> bool:
        """Insert unless the pair already has a non-REJECTED candidate."""
        ...

    def open_pair_keys(self, listing_ids: Iterable[str]) -> set[tuple[str, str]]:
        """Sorted id pairs among *listing_ids* that have a non-REJECTED candidate."""
        ...

    def list_by_status(self, statuses: Sequence[CandidateStatus]) -> list[DedupCandidate]: ...

    def get_candidate(self, candidate_id: str) -> DedupCandidate | None: ...

    def update_status(
        self,
        candidate_ids: Sequence[str],
        status: CandidateStatus,
        resolved_by: str,
    ) -> int:
        """Move candidates that may legally reach *status*; return how many moved.

        Rows already resolved elsewhere are left untouched and not counted.
        """
        ...

    def count_by_status(self, status: CandidateStatus) -> int: ...


class DedupRepository(ListingStore, CandidateStore, Protocol):
    """Both stores behind a single transaction boundary."""

    def transaction(self) -> AbstractContextManager[None]:
        """All writes inside commit together or not at all."""
        ...

    def try_acquire_job_lock(self, job_name: str) -> bool: ...

    def release_job_lock(self, job_name: str) -> None: ...


class ReviewNotifier(Protocol):
    def notify_pending_review(self, signal: ReviewSignal) -> None: ...


class RunLog(Protocol):
    def start_run(self, job_name: str) -> str: ...

    def finish_run(self, run_id: str, summary: RunSummary) -> None: ...
