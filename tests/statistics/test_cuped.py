# CUPED テスト
"""
CUPED 分散削減の単体テスト

検証観点:
- 相関の高い共変量で分散が減り、平均は変わらない
- 相関が低い・共変量が定数・標本不足では補正しない
- 訪問者IDでの突き合わせ、共変量の選択、分散削減の事前見積もり
"""

import numpy as np
import pytest

from abtest_engine.statistics.cuped import (
    apply_cuped,
    calculate_adjusted_values,
    compare_with_cuped,
    estimate_variance_reduction,
    select_best_covariate,
)


@pytest.fixture
def correlated():
    rng = np.random.default_rng(21)
    pre = rng.normal(100, 20, 1000)
    experiment = 0.8 * pre + rng.normal(0, 5, 1000)
    return experiment, pre


class TestApplyCuped:
    """apply_cuped のテスト"""

    def test_reduces_variance(self, correlated):
        experiment, pre = correlated
        result = apply_cuped(experiment, pre)

        assert result.applied
        assert result.theta == pytest.approx(0.8, abs=0.05)
        assert result.covariate_correlation > 0.9
        assert result.variance_reduction > 80
        assert result.adjusted_variance < result.original_variance
        assert result.adjusted_mean == pytest.approx(experiment.mean())

    def test_low_correlation_not_applied(self):
        rng = np.random.default_rng(22)
        result = apply_cuped(rng.normal(0, 1, 1000), rng.normal(0, 1, 1000), min_correlation=0.2)
        assert not result.applied
        assert result.theta == 0.0
        assert result.variance_reduction == 0.0
        assert result.adjusted_variance == result.original_variance

    def test_constant_covariate(self):
        result = apply_cuped([1.0, 2.0, 3.0, 4.0], [5.0] * 4)
        assert not result.applied
        assert result.covariate_correlation == 0.0

    def test_too_few_values(self):
        result = apply_cuped([1.0, 2.0], [1.0, 2.0])
        assert not result.applied
        assert result.adjusted_mean == 1.5

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="same length"):
            apply_cuped([1.0, 2.0, 3.0], [1.0, 2.0])

    def test_to_dict(self, correlated):
        data = apply_cuped(*correlated, covariate="pre_revenue").to_dict()
        assert data["covariate"] == "pre_revenue"
        assert data["applied"] is True


class TestCompareWithCuped:
    """compare_with_cuped のテスト"""

    def test_difference_preserved_with_less_variance(self):
        rng = np.random.default_rng(23)
        control_pre = rng.normal(100, 20, 500)
        variant_pre = rng.normal(100, 20, 500)
        control = control_pre + rng.normal(0, 5, 500)
        variant = variant_pre + 5 + rng.normal(0, 5, 500)

        result = compare_with_cuped(control, control_pre, variant, variant_pre)

        assert result.original_difference == pytest.approx(variant.mean() - control.mean())
        assert result.adjusted_difference == pytest.approx(result.original_difference)
        assert result.control.applied and result.variant.applied
        assert result.combined_variance_reduction > 80


class TestAdjustedValues:
    """calculate_adjusted_values のテスト"""

    def test_matches_visitors_by_id(self):
        experiment = {f"v{i}": float(i) + (i % 3) for i in range(30)}
        pre = {f"v{i}": float(i) for i in range(5, 40)}

        adjusted, result = calculate_adjusted_values(experiment, pre)

        assert set(adjusted) == {f"v{i}" for i in range(5, 30)}
        assert result.applied
        assert np.var(list(adjusted.values())) < np.var([experiment[v] for v in adjusted])

    def test_unadjusted_when_not_applied(self):
        experiment = {"a": 1.0, "b": 2.0, "c": 3.0}
        adjusted, result = calculate_adjusted_values(experiment, {"a": 7.0, "b": 7.0, "c": 7.0})
        assert not result.applied
        assert adjusted == experiment

    def test_no_common_visitors(self):
        adjusted, result = calculate_adjusted_values({"a": 1.0}, {"b": 1.0})
        assert adjusted == {}
        assert not result.applied


class TestCovariateSelection:
    """select_best_covariate / estimate_variance_reduction のテスト"""

    def test_picks_most_correlated(self, correlated):
        experiment, pre = correlated
        noise = np.random.default_rng(24).normal(0, 1, experiment.size)
        best = select_best_covariate(
            experiment,
            {"sessions": noise, "revenue": pre, "short": pre[:10]},
        )
        assert best is not None
        assert best[0] == "revenue"
        assert best[1] > 0.9

    def test_no_usable_covariate(self):
        assert select_best_covariate([1.0, 2.0, 3.0], {"flat": [1.0, 1.0, 1.0]}) is None

    def test_estimate_from_periodic_history(self):
        history = [float(i % 7) for i in range(70)]
        assert estimate_variance_reduction(history, lag_days=14) == pytest.approx(100.0)

    def test_estimate_short_history(self):
        assert estimate_variance_reduction([1.0] * 10, lag_days=14) == 0.0
