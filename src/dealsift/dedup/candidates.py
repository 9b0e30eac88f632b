"""Candidate generation: blocking, parallel scoring, idempotent persistence.

Only pairs whose blocking buckets are compatible are scored, which keeps the
comparison count proportional to bucket sizes instead of the square of the
window.  Scoring is read-only and fans out over a thread pool; persistence
stays in the calling thread.
"""

from __future__ import annotations

import time
import uuid
from collections import defaultdict
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from dealsift.config import Settings
from dealsift.dedup.errors import DedupInfrastructureError
from dealsift.dedup.fingerprint import extract_features, keys_compatible
from dealsift.dedup.models import (
    BlockingKey,
    CandidateStatus,
    DedupCandidate,
    FeatureVector,
    Listing,
    ScoredPair,
    pair_key,
)
from dealsift.dedup.repository import CandidateStore
from dealsift.dedup.scoring import score_pair

logger = structlog.get_logger(__name__)

# Pairs submitted to the pool per batch, per worker
_BATCH_PER_WORKER = 16


@dataclass
class GenerationResult:
    candidates_found: int = 0
    pairs_scored: int = 0
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False
    # Ids of candidates inserted by this call
    created_ids: set[str] = field(default_factory=set)


def _extract_all(listings: Sequence[Listing], errors: list[str]) -> list[FeatureVector]:
    """Fingerprint each listing, dropping (and recording) the ones that fail."""
    features: list[FeatureVector] = []
    for listing in listings:
        try:
            features.append(extract_features(listing))
        except Exception as exc:  # noqa: BLE001
            logger.warning("listing_fingerprint_failed", listing_id=listing.id, error=str(exc))
            errors.append(f"Failed to fingerprint listing {listing.id}: {exc}")
    return features


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------

def build_blocks(features: Sequence[FeatureVector]) -> dict[BlockingKey, list[FeatureVector]]:
    """Bucket fingerprints by exact blocking key, preserving input order."""
    blocks: dict[BlockingKey, list[FeatureVector]] = defaultdict(list)
    for fv in features:
        blocks[fv.blocking_key].append(fv)
    return dict(blocks)


def iter_candidate_pairs(
    features: Sequence[FeatureVector],
    *,
    allow_same_platform: bool = False,
    skip: set[tuple[str, str]] | None = None,
) -> Iterator[tuple[FeatureVector, FeatureVector]]:
    """Yield each plausible unordered pair exactly once.

    Pairs are drawn from within a bucket and across compatible buckets.
    Same-platform pairs are dropped unless *allow_same_platform*; pairs in
    *skip* (sorted id tuples) are dropped as already represented.
    """
    skip = skip or set()
    blocks = build_blocks(features)
    keys = sorted(blocks, key=repr)

    for i, key_a in enumerate(keys):
        for j in range(i, len(keys)):
            key_b = keys[j]
            if j != i and not keys_compatible(key_a, key_b):
                continue
            block_a, block_b = blocks[key_a], blocks[key_b]
            for x, fa in enumerate(block_a):
                others = block_a[x + 1:] if j == i else block_b
                for fb in others:
                    if fa.listing_id == fb.listing_id:
                        continue
                    if not allow_same_platform and fa.platform == fb.platform:
                        continue
                    if pair_key(fa.listing_id, fb.listing_id) in skip:
                        continue
                    yield fa, fb


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _score(fa: FeatureVector, fb: FeatureVector) -> ScoredPair:
    a, b = (fa, fb) if fa.listing_id < fb.listing_id else (fb, fa)
    result = score_pair(a, b)
    return ScoredPair(
        listing_a_id=a.listing_id,
        listing_b_id=b.listing_id,
        score=result.score,
        breakdown=result.breakdown,
    )


def _batched(
    pairs: Iterator[tuple[FeatureVector, FeatureVector]], size: int
) -> Iterator[list[tuple[FeatureVector, FeatureVector]]]:
    batch: list[tuple[FeatureVector, FeatureVector]] = []
    for pair in pairs:
        batch.append(pair)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _deadline_passed(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def score_listing_against(
    target: Listing,
    listings: Sequence[Listing],
    *,
    threshold: float,
    allow_same_platform: bool = False,
) -> list[ScoredPair]:
    """Score one listing against the blocked window without persisting.

    Returns pairs at or above *threshold*, best first.
    """
    target_fv = extract_features(target)
    others = [
        other
        for other in listings
        if other.id != target.id
        and (allow_same_platform or other.platform != target.platform)
    ]
    results: list[ScoredPair] = []
    for fv in _extract_all(others, []):
        if not keys_compatible(target_fv.blocking_key, fv.blocking_key):
            continue
        scored = _score(target_fv, fv)
        if scored.score >= threshold:
            results.append(scored)
    results.sort(key=lambda r: (-r.score, r.listing_a_id, r.listing_b_id))
    return results


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def generate_candidates(
    store: CandidateStore,
    listings: Sequence[Listing],
    settings: Settings,
    *,
    now: datetime,
    deadline: float | None = None,
) -> GenerationResult:
    """Score plausible pairs in *listings* and persist new PENDING candidates.

    Pairs already carrying a non-REJECTED candidate are skipped before
    scoring; persistence goes through ``insert_if_absent`` so reruns never
    create a second open candidate for a pair.  A listing that cannot be
    fingerprinted is dropped, and a failure scoring or persisting one pair
    is recorded; both land in ``errors`` and generation continues.

    Raises ``DedupInfrastructureError`` if existing candidates cannot be read.
    """
    result = GenerationResult()
    features = _extract_all(listings, result.errors)
    try:
        existing = store.open_pair_keys([fv.listing_id for fv in features])
    except Exception as exc:
        msg = f"Could not read existing candidates: {exc}"
        raise DedupInfrastructureError(msg, {"listings": len(features)}) from exc

    pairs = iter_candidate_pairs(
        features,
        allow_same_platform=settings.allow_same_platform,
        skip=existing,
    )
    batch_size = settings.max_workers * _BATCH_PER_WORKER

    with ThreadPoolExecutor(
        max_workers=settings.max_workers, thread_name_prefix="dedup-score"
    ) as executor:
        for batch in _batched(pairs, batch_size):
            if _deadline_passed(deadline):
                result.timed_out = True
                logger.warning("candidate_generation_timed_out", pairs_scored=result.pairs_scored)
                break

            futures = {
                executor.submit(_score, fa, fb): pair_key(fa.listing_id, fb.listing_id)
                for fa, fb in batch
            }
            for future in as_completed(futures):
                id_a, id_b = futures[future]
                try:
                    scored = future.result()
                except Exception as exc:  # noqa: BLE001
                    msg = f"Failed to score pair {id_a} / {id_b}: {exc}"
                    logger.warning("pair_scoring_failed", listing_a=id_a, listing_b=id_b, error=str(exc))
                    result.errors.append(msg)
                    continue

                result.pairs_scored += 1
                if scored.score < settings.admission_threshold:
                    continue

                candidate = DedupCandidate(
                    id=str(uuid.uuid4()),
                    listing_a_id=scored.listing_a_id,
                    listing_b_id=scored.listing_b_id,
                    score=scored.score,
                    breakdown=scored.breakdown,
                    status=CandidateStatus.PENDING,
                    created_at=now,
                )
                try:
                    if store.insert_if_absent(candidate):
                        result.candidates_found += 1
                        result.created_ids.add(candidate.id)
                except Exception as exc:  # noqa: BLE001
                    msg = f"Failed to persist candidate {id_a} / {id_b}: {exc}"
                    logger.warning(
                        "candidate_persist_failed", listing_a=id_a, listing_b=id_b, error=str(exc)
                    )
                    result.errors.append(msg)

    logger.info(
        "candidate_generation_complete",
        listings=len(listings),
        pairs_scored=result.pairs_scored,
        candidates_found=result.candidates_found,
        errors=len(result.errors),
    )
    return result
