"""Composite similarity scoring between two listing fingerprints.

The composite is a weighted average over the fields present on *both*
sides, re-normalised over the weights of those fields.  A field missing on
either side is excluded from numerator and denominator alike, so missing
data is never treated as a mismatch.
"""

from __future__ import annotations

from rapidfuzz import fuzz

from dealsift.dedup.models import FeatureVector, FieldScores, ScoreResult

FIELD_WEIGHTS: dict[str, float] = {
    "title": 0.35,
    "address": 0.20,
    "price": 0.15,
    "revenue": 0.075,
    "ebitda": 0.075,
    "broker": 0.15,
}

# Title similarity blends set overlap with an edit-distance ratio
TITLE_JACCARD_WEIGHT = 0.5


# ---------------------------------------------------------------------------
# Field similarities
# ---------------------------------------------------------------------------

def title_similarity(a: tuple[str, ...], b: tuple[str, ...]) -> float | None:
    """Blend token-set Jaccard with the normalised edit-distance ratio."""
    if not a or not b:
        return None
    set_a, set_b = set(a), set(b)
    jaccard = len(set_a & set_b) / len(set_a | set_b)
    ratio = fuzz.ratio(" ".join(a), " ".join(b)) / 100.0
    return TITLE_JACCARD_WEIGHT * jaccard + (1 - TITLE_JACCARD_WEIGHT) * ratio


def exact_similarity(a: str | None, b: str | None) -> float | None:
    if a is None or b is None:
        return None
    return 1.0 if a == b else 0.0


def amount_similarity(a: float | None, b: float | None) -> float | None:
    """``1 - min(1, |a - b| / max(a, b))`` for two positive amounts."""
    if a is None or b is None:
        return None
    return 1.0 - min(1.0, abs(a - b) / max(a, b))


def broker_similarity(a: FeatureVector, b: FeatureVector) -> float | None:
    """A shared broker phone or email is strong evidence of the same listing.

    The field only carries signal when both sides expose the same kind of
    contact (both phones or both emails).
    """
    comparable = False
    if a.broker_phone is not None and b.broker_phone is not None:
        comparable = True
        if a.broker_phone == b.broker_phone:
            return 1.0
    if a.broker_email is not None and b.broker_email is not None:
        comparable = True
        if a.broker_email == b.broker_email:
            return 1.0
    return 0.0 if comparable else None


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------

def score_pair(a: FeatureVector, b: FeatureVector) -> ScoreResult:
    """Score two fingerprints.

    Returns a ``ScoreResult`` whose ``score`` lies in [0, 1] and whose
    ``breakdown`` names every field's similarity (``None`` for fields that
    carried no signal).  The result is symmetric in *a* and *b*.
    """
    breakdown = FieldScores(
        title=title_similarity(a.title_tokens, b.title_tokens),
        address=exact_similarity(a.address, b.address),
        price=amount_similarity(a.asking_price, b.asking_price),
        revenue=amount_similarity(a.revenue, b.revenue),
        ebitda=amount_similarity(a.ebitda, b.ebitda),
        broker=broker_similarity(a, b),
    )

    present = breakdown.present()
    total_weight = sum(FIELD_WEIGHTS[name] for name in present)
    if total_weight == 0:
        return ScoreResult(score=0.0, breakdown=breakdown)

    weighted = sum(FIELD_WEIGHTS[name] * value for name, value in present.items())
    score = min(1.0, max(0.0, weighted / total_weight))
    return ScoreResult(score=score, breakdown=breakdown)
