# ノベルティ効果 テスト
"""
ノベルティ効果・学習効果の検出の単体テスト

日次データは「コントロール 2000 人中 200 人がコンバージョン」を基準に、
比較群のコンバージョン数をリフトから逆算して作る（リフトは 0.5% 刻みで再現される）。
"""

import math
from datetime import date, timedelta

import pytest

from abtest_engine.statistics.novelty import (
    DailyLift,
    detect_learning_effect,
    detect_novelty_effect,
)


def make_daily(lifts, visitors=2000, conversions=200):
    start = date(2024, 1, 1)
    return [
        DailyLift(
            day=start + timedelta(days=offset),
            control_visitors=visitors,
            control_conversions=conversions,
            variant_visitors=visitors,
            variant_conversions=round(conversions * (1 + lift / 100)),
        )
        for offset, lift in enumerate(lifts)
    ]


def decaying(amplitude, rate, asymptote, days):
    return [amplitude * math.exp(-rate * t) + asymptote for t in range(days)]


class TestDailyLift:
    """DailyLift のテスト"""

    def test_lift(self):
        day = DailyLift(date(2024, 1, 1), 1000, 100, 1000, 120)
        assert day.lift == pytest.approx(20.0)

    def test_zero_control_rate(self):
        assert DailyLift(date(2024, 1, 1), 1000, 0, 1000, 50).lift == 0.0
        assert DailyLift(date(2024, 1, 1), 0, 0, 1000, 50).lift == 0.0


class TestNoveltyEffect:
    """detect_novelty_effect のテスト"""

    def test_decaying_lift_not_yet_stable(self):
        result = detect_novelty_effect(make_daily(decaying(50, 0.1, 10, 10)))

        assert result.detected
        assert not result.is_stable
        assert result.days_to_stabilize > 0
        assert result.initial_lift == pytest.approx(60.0)
        assert result.stabilized_lift < result.current_lift
        assert result.fit.r2 > 0.9
        assert result.message.startswith("Novelty effect detected")
        assert "Do not ship" in result.recommendation

    def test_novelty_worn_off(self):
        result = detect_novelty_effect(make_daily(decaying(50, 0.4, 10, 14)))

        assert result.detected
        assert result.is_stable
        assert result.days_to_stabilize == 0
        assert result.stabilized_lift == pytest.approx(10.0, abs=2.0)
        assert result.decay_rate == pytest.approx(0.4, abs=0.1)
        assert "worn off" in result.message

    def test_flat_lift_not_detected(self):
        result = detect_novelty_effect(make_daily([10.0] * 10))
        assert not result.detected
        assert result.current_lift == pytest.approx(10.0)

    def test_growing_lift_not_detected(self):
        result = detect_novelty_effect(make_daily([2.0 * (t + 1) for t in range(10)]))
        assert not result.detected

    def test_insufficient_days(self):
        result = detect_novelty_effect(make_daily([50.0, 40.0, 30.0]), min_days=7)
        assert not result.detected
        assert result.message == "Insufficient data (3/7 days)"
        assert result.days_to_stabilize is None

    def test_outlier_day_does_not_dominate(self):
        lifts = [10.0] * 20
        lifts[12] = 300.0
        assert not detect_novelty_effect(make_daily(lifts)).detected

    def test_to_dict(self):
        data = detect_novelty_effect(make_daily(decaying(50, 0.1, 10, 10))).to_dict()
        assert data["detected"] is True
        assert set(data["fit"]) == {"r2", "rmse", "mape"}


class TestLearningEffect:
    """detect_learning_effect のテスト"""

    def test_growing_lift(self):
        result = detect_learning_effect(make_daily([2.0 * (t + 1) for t in range(10)]))

        # 前半平均 6、後半平均 16
        assert result.detected
        assert result.growth_rate == pytest.approx(10 / 6)
        assert result.current_lift == pytest.approx(20.0)
        assert result.projected_lift == pytest.approx(30.0)

    def test_decaying_lift(self):
        result = detect_learning_effect(make_daily(decaying(50, 0.1, 10, 10)))
        assert not result.detected
        assert result.message == "No significant learning effect detected."

    def test_insufficient_days(self):
        result = detect_learning_effect(make_daily([1.0, 2.0]))
        assert not result.detected
        assert "Insufficient data" in result.message
