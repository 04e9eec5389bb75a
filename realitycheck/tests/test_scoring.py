from __future__ import annotations

from decimal import Decimal

import pytest

from realitycheck.schemas import DIMENSIONS, Dimension, DimensionScore
from realitycheck.scoring import CANONICAL_WEIGHTS, ScoringAggregator, compute_verdict, validate_weights


def scores(**values: int) -> list[DimensionScore]:
    return [DimensionScore(dimension=Dimension(k), score=v) for k, v in values.items()]


class TestWeights:
    def test_canonical_weights_sum_to_exactly_one(self):
        assert sum(CANONICAL_WEIGHTS.values(), Decimal(0)) == Decimal(1)
        assert list(CANONICAL_WEIGHTS) == list(DIMENSIONS)

    @pytest.mark.parametrize("weights", [
        {d: Decimal("0.1") for d in DIMENSIONS},
        {d.value: "0.2" for d in DIMENSIONS if d is not Dimension.GRAVEYARD},
        {**{d: Decimal("0.25") for d in DIMENSIONS[:4]}, Dimension.RISKS: Decimal("0.1"),
         Dimension.GRAVEYARD: Decimal("-0.1")},
    ])
    def test_invalid_tables_rejected(self, weights):
        with pytest.raises(ValueError):
            validate_weights(weights)

    def test_string_keys_are_accepted(self):
        table = validate_weights({d.value: str(w) for d, w in CANONICAL_WEIGHTS.items()})
        assert table == CANONICAL_WEIGHTS


class TestAggregate:
    @pytest.mark.parametrize("value", [0, 37, 100])
    def test_uniform_scores_give_that_score(self, value):
        agg = ScoringAggregator()
        assert agg.aggregate(scores(**{d.value: value for d in DIMENSIONS})) == value

    def test_full_weighted_mean(self):
        agg = ScoringAggregator()
        result = agg.aggregate(scores(market=80, problem=70, barriers=60, execution=50, risks=40, graveyard=40))
        # 20 + 14 + 9 + 7.5 + 6 + 4 = 60.5
        assert result == 61

    def test_missing_dimension_renormalizes_over_present_weight(self):
        agg = ScoringAggregator()
        present = scores(market=80, problem=70, barriers=60, execution=50, graveyard=40)
        assert agg.weight_mass(present) == Decimal("0.85")
        # 54.5 / 0.85 = 64.1176...
        assert agg.aggregate(present) == 64

    def test_rounds_half_up(self):
        weights = {d: Decimal(0) for d in DIMENSIONS}
        weights[Dimension.MARKET] = Decimal("0.5")
        weights[Dimension.PROBLEM] = Decimal("0.5")
        agg = ScoringAggregator(weights)
        assert agg.aggregate(scores(market=50, problem=51)) == 51
        assert agg.aggregate(scores(market=52, problem=51)) == 52

    def test_zero_weight_mass_is_an_error(self):
        weights = {d: Decimal(0) for d in DIMENSIONS}
        weights[Dimension.MARKET] = Decimal(1)
        with pytest.raises(ValueError):
            ScoringAggregator(weights).aggregate(scores(risks=50))

    def test_empty_and_duplicate_inputs_rejected(self):
        agg = ScoringAggregator()
        with pytest.raises(ValueError):
            agg.aggregate([])
        with pytest.raises(ValueError):
            agg.aggregate(scores(market=10) + scores(market=20))

    def test_result_is_always_in_range(self):
        agg = ScoringAggregator()
        for value in (0, 1, 99, 100):
            for dim in DIMENSIONS:
                assert 0 <= agg.aggregate(scores(**{dim.value: value})) <= 100


class TestVerdict:
    @pytest.mark.parametrize("overall,verdict", [
        (100, "strong"), (75, "strong"), (74, "promising"), (55, "promising"),
        (54, "uncertain"), (35, "uncertain"), (34, "weak"), (0, "weak"),
    ])
    def test_bands(self, overall, verdict):
        assert compute_verdict(overall) == verdict
        assert ScoringAggregator().verdict(overall) == verdict
