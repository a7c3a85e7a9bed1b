# 多重比較補正 テスト

import pytest

from abtest_engine.statistics.multiple_testing import (
    CorrectionMethod,
    apply_correction,
    benjamini_hochberg,
    bonferroni,
    holm_bonferroni,
    recommend_correction_method,
)


class TestHolmBonferroni:
    """holm_bonferroni のテスト"""

    def test_step_down(self):
        result = holm_bonferroni(
            [("c_vs_a", 0.01), ("c_vs_b", 0.04), ("c_vs_c", 0.03)],
            alpha=0.05,
        )
        by_name = {c.comparison: c for c in result.comparisons}

        # 0.01 < 0.05/3、0.03 >= 0.05/2 で停止
        assert by_name["c_vs_a"].is_significant
        assert not by_name["c_vs_c"].is_significant
        assert not by_name["c_vs_b"].is_significant
        assert by_name["c_vs_a"].adjusted_alpha == pytest.approx(0.05 / 3)
        assert by_name["c_vs_c"].rank == 2
        assert result.significant_count == 1
        assert result.method == CorrectionMethod.HOLM

    def test_adjusted_p_values_are_monotone(self):
        # 素の調整値は 0.03, 0.04, 0.03 だが、順位順に累積最大を取る
        result = holm_bonferroni([("a", 0.01), ("b", 0.02), ("c", 0.03)])
        adjusted = [c.adjusted_p_value for c in result.comparisons]
        assert adjusted == pytest.approx([0.03, 0.04, 0.04])

    def test_adjusted_p_values_capped_at_one(self):
        result = holm_bonferroni([("a", 0.6), ("b", 0.7)])
        assert [c.adjusted_p_value for c in result.comparisons] == [1.0, 1.0]

    def test_adjusted_p_value_agrees_with_decision(self):
        result = holm_bonferroni([("a", 0.001), ("b", 0.03), ("c", 0.04)], alpha=0.05)
        for c in result.comparisons:
            assert c.is_significant == (c.adjusted_p_value <= 0.05)

    def test_preserves_input_order(self):
        result = holm_bonferroni([("x", 0.5), ("y", 0.001)])
        assert [c.comparison for c in result.comparisons] == ["x", "y"]

    def test_stops_after_first_failure(self):
        # 3番目の p値は単独なら alpha/1 を下回るが、2番目で停止している
        result = holm_bonferroni([("a", 0.001), ("b", 0.03), ("c", 0.04)], alpha=0.05)
        assert [c.is_significant for c in result.comparisons] == [True, False, False]

    def test_all_significant_message(self):
        result = holm_bonferroni([("a", 0.001), ("b", 0.002)])
        assert result.has_significant_result
        assert result.message.startswith("All 2 comparisons")

    def test_none_significant_message(self):
        result = holm_bonferroni([("a", 0.2)])
        assert not result.has_significant_result
        assert "No significant differences" in result.message

    def test_partial_message_names_comparisons(self):
        result = holm_bonferroni([("a", 0.001), ("b", 0.9)])
        assert "1 of 2" in result.message
        assert "a" in result.message

    def test_empty(self):
        result = holm_bonferroni([], alpha=0.1)
        assert result.comparisons == []
        assert result.alpha == 0.1
        assert result.message == "No comparisons provided"

    def test_to_dict(self):
        data = holm_bonferroni([("a", 0.001)]).to_dict()
        assert data["method"] == "holm"
        assert data["significant_count"] == 1
        assert data["comparisons"][0]["rank"] == 1
        assert data["comparisons"][0]["adjusted_p_value"] == pytest.approx(0.001)


class TestBonferroni:
    """bonferroni のテスト"""

    def test_single_threshold(self):
        result = bonferroni([("a", 0.01), ("b", 0.02), ("c", 0.03)], alpha=0.05)
        assert [c.is_significant for c in result.comparisons] == [True, False, False]
        assert all(c.adjusted_alpha == pytest.approx(0.05 / 3) for c in result.comparisons)
        assert [c.adjusted_p_value for c in result.comparisons] == pytest.approx([0.03, 0.06, 0.09])

    def test_more_conservative_than_holm(self):
        p_values = [("a", 0.01), ("b", 0.04)]
        assert bonferroni(p_values).significant_count == 1
        assert holm_bonferroni(p_values).significant_count == 2


class TestBenjaminiHochberg:
    """benjamini_hochberg のテスト"""

    def test_step_up(self):
        # 閾値 0.01, 0.02, 0.03, 0.04, 0.05。p_(3)=0.025 <= 0.03 なので順位1〜3が有意
        # （p_(2)=0.021 は単独では閾値 0.02 を超えている）
        result = benjamini_hochberg(
            [("a", 0.005), ("b", 0.021), ("c", 0.025), ("d", 0.2), ("e", 0.5)],
            alpha=0.05,
        )
        assert [c.is_significant for c in result.comparisons] == [True, True, True, False, False]
        assert result.comparisons[2].adjusted_alpha == pytest.approx(0.03)

    def test_adjusted_p_values(self):
        result = benjamini_hochberg([("a", 0.01), ("b", 0.04), ("c", 0.03)])
        # m/rank × p: 0.03, 0.045, 0.04 → 大きい順位から累積最小
        by_name = {c.comparison: c.adjusted_p_value for c in result.comparisons}
        assert by_name == pytest.approx({"a": 0.03, "c": 0.04, "b": 0.04})

    def test_empty(self):
        result = benjamini_hochberg([])
        assert result.method == CorrectionMethod.BENJAMINI_HOCHBERG
        assert result.comparisons == []


class TestRecommendation:
    """recommend_correction_method / apply_correction のテスト"""

    @pytest.mark.parametrize("analysis_type,count,expected", [
        ("confirmatory", 1, CorrectionMethod.NONE),
        ("confirmatory", 20, CorrectionMethod.HOLM),
        ("exploratory", 5, CorrectionMethod.HOLM),
        ("exploratory", 11, CorrectionMethod.BENJAMINI_HOCHBERG),
    ])
    def test_recommendation(self, analysis_type, count, expected):
        assert recommend_correction_method(analysis_type, count) == expected

    def test_apply_dispatches(self):
        p_values = [("a", 0.01), ("b", 0.02)]
        assert apply_correction(p_values, CorrectionMethod.BONFERRONI).method == (
            CorrectionMethod.BONFERRONI
        )
        assert apply_correction(p_values, CorrectionMethod.HOLM).significant_count == 2

    def test_apply_none_compares_raw_p_values(self):
        result = apply_correction([("a", 0.04), ("b", 0.06)], CorrectionMethod.NONE)
        assert [c.is_significant for c in result.comparisons] == [True, False]
        assert result.comparisons[0].adjusted_p_value == 0.04


class TestBoundary:
    """しきい値ちょうどの p値"""

    def test_p_value_at_threshold_is_significant(self):
        assert bonferroni([("a", 0.025), ("b", 0.5)], alpha=0.05).comparisons[0].is_significant
        assert apply_correction([("a", 0.05)], CorrectionMethod.NONE).has_significant_result
