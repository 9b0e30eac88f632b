"""Listing deduplication engine: fingerprinting, scoring, clustering, merging."""

from __future__ import annotations

from dealsift.dedup.candidates import (
    generate_candidates,
    iter_candidate_pairs,
    score_listing_against,
)
from dealsift.dedup.clustering import (
    UnionFind,
    build_groups,
    choose_canonical,
)
from dealsift.dedup.engine import (
    DedupEngine,
)
from dealsift.dedup.events import (
    DedupRequest,
    DedupRequestKind,
    DedupTriggerQueue,
)
from dealsift.dedup.fingerprint import (
    blocking_key,
    extract_features,
    normalize_title,
)
from dealsift.dedup.merge import (
    execute_merge,
    is_auto_mergeable,
    merge_groups,
)
from dealsift.dedup.models import (
    CandidateStatus,
    DedupCandidate,
    DedupGroup,
    Listing,
    RunStatus,
    RunSummary,
)
from dealsift.dedup.scoring import (
    score_pair,
)
from dealsift.dedup.validation import (
    ConfusionMatrix,
    evaluate_pairs,
    generate_validation_report,
    sweep_thresholds,
)

__all__ = [
    # Fingerprints and scoring
    "blocking_key",
    "extract_features",
    "normalize_title",
    "score_pair",
    # Candidates and clustering
    "UnionFind",
    "build_groups",
    "choose_canonical",
    "generate_candidates",
    "iter_candidate_pairs",
    "score_listing_against",
    # Merging
    "execute_merge",
    "is_auto_mergeable",
    "merge_groups",
    # Coordination
    "DedupEngine",
    "DedupRequest",
    "DedupRequestKind",
    "DedupTriggerQueue",
    # Model
    "CandidateStatus",
    "DedupCandidate",
    "DedupGroup",
    "Listing",
    "RunStatus",
    "RunSummary",
    # Validation
    "ConfusionMatrix",
    "evaluate_pairs",
    "generate_validation_report",
    "sweep_thresholds",
]
