"""Deterministic aggregation of dimension scores into one overall verdict.

Weights are held as ``Decimal`` so the canonical six sum to exactly 1.
The overall score is the weighted mean over the dimensions that actually
ran: a missing dimension drops out of both numerator and denominator, which
keeps the result on a 0-100 scale however many analyzers completed.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from realitycheck.schemas import DIMENSIONS, Dimension, DimensionScore

CANONICAL_WEIGHTS: dict[Dimension, Decimal] = {
    Dimension.MARKET: Decimal("0.25"),
    Dimension.PROBLEM: Decimal("0.20"),
    Dimension.BARRIERS: Decimal("0.15"),
    Dimension.EXECUTION: Decimal("0.15"),
    Dimension.RISKS: Decimal("0.15"),
    Dimension.GRAVEYARD: Decimal("0.10"),
}

# (minimum overall score, verdict), checked top-down
VERDICT_BANDS: list[tuple[int, str]] = [
    (75, "strong"),
    (55, "promising"),
    (35, "uncertain"),
    (0, "weak"),
]


def validate_weights(weights: Mapping[Dimension | str, Decimal | float | str]) -> dict[Dimension, Decimal]:
    """Coerce and check a weight table: all six dimensions, non-negative, summing to 1."""
    coerced = {Dimension(k): Decimal(str(v)) for k, v in weights.items()}
    missing = [d.value for d in DIMENSIONS if d not in coerced]
    if missing:
        raise ValueError(f"weights missing for: {', '.join(missing)}")
    if any(w < 0 for w in coerced.values()):
        raise ValueError("weights must be non-negative")
    total = sum(coerced.values(), Decimal(0))
    if total != Decimal(1):
        raise ValueError(f"weights must sum to 1, got {total}")
    return {d: coerced[d] for d in DIMENSIONS}


def compute_verdict(overall: int) -> str:
    for floor, verdict in VERDICT_BANDS:
        if overall >= floor:
            return verdict
    return VERDICT_BANDS[-1][1]


class ScoringAggregator:
    def __init__(self, weights: Mapping[Dimension | str, Decimal | float | str] | None = None):
        self.weights = validate_weights(weights or CANONICAL_WEIGHTS)

    def weight_mass(self, scores: Iterable[DimensionScore]) -> Decimal:
        """Sum of the weights of the dimensions present."""
        return sum((self.weights[s.dimension] for s in scores), Decimal(0))

    def aggregate(self, scores: list[DimensionScore]) -> int:
        """Weighted mean over present dimensions, rounded half up."""
        if not scores:
            raise ValueError("overall score is undefined without dimension scores")
        dims = [s.dimension for s in scores]
        if len(dims) != len(set(dims)):
            raise ValueError("duplicate dimension scores")
        mass = self.weight_mass(scores)
        if mass == 0:
            raise ValueError("present dimensions carry zero weight")
        weighted = sum((self.weights[s.dimension] * Decimal(s.score) for s in scores), Decimal(0))
        overall = (weighted / mass).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return max(0, min(100, int(overall)))

    def verdict(self, overall: int) -> str:
        return compute_verdict(overall)
