"""Duplicate-detection quality against hand-labelled listing pairs.

Each labelled pair is scored once; the scores can then be cut at any
threshold to fill a confusion matrix, which is how the admission and
auto-merge thresholds get tuned against real data.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from dealsift.dedup.fingerprint import extract_features
from dealsift.dedup.models import Listing
from dealsift.dedup.scoring import score_pair

# Precision floors for the report's verdict line
AUTO_MERGE_PRECISION = 0.98
REVIEW_PRECISION = 0.90


@dataclass(frozen=True)
class LabelledPair:
    listing_a: Listing
    listing_b: Listing
    same_business: bool


@dataclass(frozen=True)
class LabelledScore:
    score: float
    same_business: bool


def score_labelled_pairs(pairs: Iterable[LabelledPair]) -> list[LabelledScore]:
    return [
        LabelledScore(
            score=score_pair(extract_features(p.listing_a), extract_features(p.listing_b)).score,
            same_business=p.same_business,
        )
        for p in pairs
    ]


def _ratio(num: int, den: int) -> float:
    return num / den if den else 0.0


@dataclass(frozen=True)
class ConfusionMatrix:
    """Scorer verdicts at one threshold versus the human labels."""

    threshold: float
    true_positives: int = 0
    false_positives: int = 0
    true_negatives: int = 0
    false_negatives: int = 0

    @classmethod
    def at_threshold(cls, scores: Iterable[LabelledScore], threshold: float) -> ConfusionMatrix:
        cells = {"tp": 0, "fp": 0, "tn": 0, "fn": 0}
        for s in scores:
            predicted = s.score >= threshold
            if predicted:
                cells["tp" if s.same_business else "fp"] += 1
            else:
                cells["fn" if s.same_business else "tn"] += 1
        return cls(
            threshold=threshold,
            true_positives=cells["tp"],
            false_positives=cells["fp"],
            true_negatives=cells["tn"],
            false_negatives=cells["fn"],
        )

    @property
    def total(self) -> int:
        return self.true_positives + self.false_positives + self.true_negatives + self.false_negatives

    @property
    def precision(self) -> float:
        return _ratio(self.true_positives, self.true_positives + self.false_positives)

    @property
    def recall(self) -> float:
        return _ratio(self.true_positives, self.true_positives + self.false_negatives)

    @property
    def f1(self) -> float:
        p, r = self.precision, self.recall
        return 2 * p * r / (p + r) if p + r else 0.0

    @property
    def accuracy(self) -> float:
        return _ratio(self.true_positives + self.true_negatives, self.total)

    @property
    def verdict(self) -> str:
        if self.precision >= AUTO_MERGE_PRECISION:
            return "safe for auto-merge"
        if self.precision >= REVIEW_PRECISION:
            return "review queue only"
        return "too loose"


def evaluate_pairs(pairs: Sequence[LabelledPair], threshold: float) -> ConfusionMatrix:
    """Score *pairs* and cut them at *threshold* (score >= threshold is a match)."""
    return ConfusionMatrix.at_threshold(score_labelled_pairs(pairs), threshold)


def sweep_thresholds(
    pairs: Sequence[LabelledPair], thresholds: Iterable[float]
) -> list[ConfusionMatrix]:
    """One matrix per threshold, ascending; every pair is scored only once."""
    scores = score_labelled_pairs(pairs)
    return [ConfusionMatrix.at_threshold(scores, t) for t in sorted(thresholds)]


def generate_validation_report(matrices: Sequence[ConfusionMatrix]) -> str:
    """Render one row per threshold, plus the 2x2 matrix when there is only one."""
    if not matrices:
        return "No labelled pairs evaluated."

    header = f"{'threshold':>9}  {'prec':>6}  {'recall':>6}  {'f1':>6}  {'acc':>6}  verdict"
    lines = [f"Labelled pairs: {matrices[0].total}", header, "-" * len(header)]
    for m in matrices:
        lines.append(
            f"{m.threshold:>9.2f}  {m.precision:>6.3f}  {m.recall:>6.3f}  "
            f"{m.f1:>6.3f}  {m.accuracy:>6.3f}  {m.verdict}"
        )

    if len(matrices) == 1:
        m = matrices[0]
        lines += [
            "",
            f"{'':>16}{'labelled dup':>14}{'labelled distinct':>19}",
            f"{'predicted dup':<16}{m.true_positives:>14}{m.false_positives:>19}",
            f"{'predicted diff':<16}{m.false_negatives:>14}{m.true_negatives:>19}",
        ]
    return "\n".join(lines)
