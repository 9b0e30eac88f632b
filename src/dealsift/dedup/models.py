"""Data model for the listing deduplication engine.

Listings are owned by the scraping subsystem; the engine reads them and only
ever writes ``superseded_by``.  Candidates carry a typed per-field score
breakdown instead of an open dict so that scorer output is checked at the
seams.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple

from dealsift.dedup.errors import InvalidTransitionError

# ---------------------------------------------------------------------------
# Listings and fingerprints
# ---------------------------------------------------------------------------


@dataclass
class Listing:
    """A business-for-sale listing as handed over by the scraper."""

    id: str
    platform: str
    title: str
    first_seen: datetime
    last_seen: datetime
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    asking_price: float | None = None
    revenue: float | None = None
    ebitda: float | None = None
    category: str | None = None
    broker_name: str | None = None
    broker_phone: str | None = None
    broker_email: str | None = None
    superseded_by: str | None = None

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None


class BlockingKey(NamedTuple):
    """Coarse bucket used to restrict pairwise comparison.

    A ``None`` component means "unknown" and is compatible with any value.
    """

    state: str | None
    category: str | None
    price_band: int | None


@dataclass(frozen=True)
class FeatureVector:
    """Normalised, comparable view of a single listing."""

    listing_id: str
    platform: str
    title_tokens: tuple[str, ...]
    address: str | None
    asking_price: float | None
    revenue: float | None
    ebitda: float | None
    broker_phone: str | None
    broker_email: str | None
    blocking_key: BlockingKey


# ---------------------------------------------------------------------------
# Scoring results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldScores:
    """Per-field similarity; ``None`` means the field carried no signal."""

    title: float | None = None
    address: float | None = None
    price: float | None = None
    revenue: float | None = None
    ebitda: float | None = None
    broker: float | None = None

    def present(self) -> dict[str, float]:
        """Return the fields that contributed to the composite score."""
        return {
            name: value
            for name, value in (
                ("title", self.title),
                ("address", self.address),
                ("price", self.price),
                ("revenue", self.revenue),
                ("ebitda", self.ebitda),
                ("broker", self.broker),
            )
            if value is not None
        }


@dataclass(frozen=True)
class ScoreResult:
    score: float
    breakdown: FieldScores


@dataclass(frozen=True)
class ScoredPair:
    """A scored, unordered listing pair (ids stored in sorted order)."""

    listing_a_id: str
    listing_b_id: str
    score: float
    breakdown: FieldScores


def pair_key(id_a: str, id_b: str) -> tuple[str, str]:
    """Return the canonical ordering for an unordered listing pair."""
    return (id_a, id_b) if id_a < id_b else (id_b, id_a)


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class CandidateStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MERGED = "MERGED"

    @property
    def is_open(self) -> bool:
        return self in (CandidateStatus.PENDING, CandidateStatus.APPROVED)


_ALLOWED_TRANSITIONS: dict[CandidateStatus, frozenset[CandidateStatus]] = {
    CandidateStatus.PENDING: frozenset(
        {CandidateStatus.APPROVED, CandidateStatus.REJECTED, CandidateStatus.MERGED}
    ),
    CandidateStatus.APPROVED: frozenset({CandidateStatus.MERGED}),
    CandidateStatus.REJECTED: frozenset(),
    CandidateStatus.MERGED: frozenset(),
}


def allowed_predecessors(target: CandidateStatus) -> frozenset[CandidateStatus]:
    """Statuses a candidate may hold immediately before moving to *target*."""
    return frozenset(
        status for status, targets in _ALLOWED_TRANSITIONS.items() if target in targets
    )


def check_transition(current: CandidateStatus, target: CandidateStatus) -> None:
    """Raise ``InvalidTransitionError`` unless *current* may move to *target*."""
    if target not in _ALLOWED_TRANSITIONS[current]:
        msg = f"Cannot move candidate from {current.value} to {target.value}"
        raise InvalidTransitionError(msg)


@dataclass
class DedupCandidate:
    """A proposed duplicate relationship between two listings."""

    id: str
    listing_a_id: str
    listing_b_id: str
    score: float
    breakdown: FieldScores
    status: CandidateStatus
    created_at: datetime
    resolved_by: str | None = None
    resolved_at: datetime | None = None

    @property
    def pair(self) -> tuple[str, str]:
        return pair_key(self.listing_a_id, self.listing_b_id)


@dataclass
class DedupGroup:
    """Connected component of candidate edges with a canonical listing.

    ``member_ids`` lists the canonical listing first, then the remaining
    members sorted by id.  ``edges`` holds every open candidate between two
    members, including ones below the review threshold.
    ``rejected_edges`` holds reviewer-rejected candidates between two
    members; any of them keeps the group out of auto-merge.
    """

    canonical_id: str
    member_ids: list[str]
    edges: list[DedupCandidate] = field(default_factory=list)
    rejected_edges: list[DedupCandidate] = field(default_factory=list)

    @property
    def non_canonical_ids(self) -> list[str]:
        return [m for m in self.member_ids if m != self.canonical_id]


# ---------------------------------------------------------------------------
# Run reporting
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class RunSummary:
    """Outcome of one engine invocation."""

    candidates_found: int = 0
    groups_created: int = 0
    auto_merged: int = 0
    pending_review: int = 0
    errors: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.SUCCESS
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "candidates_found": self.candidates_found,
            "groups_created": self.groups_created,
            "auto_merged": self.auto_merged,
            "pending_review": self.pending_review,
            "errors": list(self.errors),
            "status": self.status.value,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True)
class ReviewSignal:
    """Payload for the "candidates pending manual review" notification."""

    pending_review: int
    candidates_found: int
    auto_merged: int
    high_priority: bool
