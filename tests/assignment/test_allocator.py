# Allocator テスト
"""
トラフィック配分の単体テスト

検証観点:
- 固定配分: 累積重みの半開区間、重み 0 のバリアントは選ばれない
- 重みの検証（合計 100、負の値・非整数は不可）
- 10万訪問者での配分比率が設定重みの ±1% 以内
- バンディット配分: 探索・活用・同率時の優先順位
"""

from collections import Counter
from dataclasses import replace

import pytest

from abtest_engine.assignment.allocator import allocate, cumulative_weights, validate_weights
from abtest_engine.assignment.hasher import bucket
from abtest_engine.models.errors import ConfigurationError
from abtest_engine.models.experiment import AllocationMode, Test, Variant


class TestFixedAllocation:
    """固定配分のテスト"""

    def test_half_open_intervals(self, make_test):
        test = make_test(weights={"control": 50, "variant_a": 50})
        assert allocate(test, 0) == "control"
        assert allocate(test, 49) == "control"
        assert allocate(test, 50) == "variant_a"
        assert allocate(test, 99) == "variant_a"

    def test_three_way_split(self, make_test):
        test = make_test(weights={"control": 20, "a": 30, "b": 50})
        assert allocate(test, 19) == "control"
        assert allocate(test, 20) == "a"
        assert allocate(test, 49) == "a"
        assert allocate(test, 50) == "b"

    def test_zero_weight_never_selected(self, make_test):
        test = make_test(weights={"control": 0, "variant_a": 100})
        assert {allocate(test, b) for b in range(100)} == {"variant_a"}

    def test_single_variant(self, make_test):
        test = make_test(weights={"control": 100})
        assert allocate(test, 73) == "control"

    def test_cumulative_weights(self):
        variants = [Variant("a", weight=20), Variant("b", weight=30), Variant("c", weight=50)]
        assert cumulative_weights(variants) == [20, 50, 100]

    @pytest.mark.parametrize(
        "weights",
        [
            {"control": 50, "variant_a": 30},
            {"control": 60, "variant_a": 50},
        ],
    )
    def test_weights_must_sum_to_100(self, make_test, weights):
        with pytest.raises(ConfigurationError, match="sum to 100"):
            allocate(make_test(weights=weights), 10)

    def test_negative_weight_rejected(self, make_test):
        with pytest.raises(ConfigurationError, match="negative"):
            validate_weights(make_test(weights={"control": 110, "variant_a": -10}))

    def test_non_integer_weight_rejected(self, make_test):
        with pytest.raises(ConfigurationError, match="integer"):
            validate_weights(make_test(weights={"control": 50.5, "variant_a": 49.5}))

    def test_no_variants(self):
        with pytest.raises(ConfigurationError, match="no variants"):
            allocate(Test(id="empty", tenant_id="tenant_1"), 0)

    @pytest.mark.parametrize(
        "weights",
        [
            {"control": 50, "variant_a": 50},
            {"control": 33, "a": 33, "b": 34},
            {"control": 90, "variant_a": 10},
        ],
    )
    def test_distribution_within_one_percent(self, make_test, weights):
        """10万訪問者で各バリアントの比率が重み ±1% 以内"""
        test = make_test("distribution", weights=weights)
        visitors = 100_000
        counts = Counter(
            allocate(test, bucket(test.id, f"visitor_{i}")) for i in range(visitors)
        )
        for variant_id, weight in weights.items():
            assert abs(counts[variant_id] / visitors - weight / 100) <= 0.01


class TestBanditAllocation:
    """バンディット配分（epsilon-greedy）のテスト"""

    @pytest.fixture
    def bandit_test(self):
        return Test(
            id="bandit",
            tenant_id="tenant_1",
            allocation_mode=AllocationMode.BANDIT,
            exploration_rate=0.2,
            variants=[
                Variant("control", is_control=True, trials=100, successes=10),
                Variant("a", trials=100, successes=30),
                Variant("b", trials=100, successes=20),
            ],
        )

    def test_exploration_splits_buckets_evenly(self, bandit_test):
        """bucket < 20 は探索: 連続区間 7 / 7 / 6 で等分"""
        assert allocate(bandit_test, 0) == "control"
        assert allocate(bandit_test, 6) == "control"
        assert allocate(bandit_test, 7) == "a"
        assert allocate(bandit_test, 13) == "a"
        assert allocate(bandit_test, 14) == "b"
        assert allocate(bandit_test, 19) == "b"

    def test_exploration_uneven_division(self, bandit_test):
        """探索バケット数がバリアント数で割り切れなくても差は最大1"""
        test = replace(bandit_test, exploration_rate=0.1)
        counts = Counter(allocate(test, b) for b in range(10))
        assert counts == {"control": 4, "a": 3, "b": 3}

    def test_exploration_rate_rounding(self, bandit_test):
        """0.07 * 100 の浮動小数点誤差で探索区間が広がらない"""
        test = replace(bandit_test, exploration_rate=0.07)
        assert allocate(test, 6) == "b"
        # バケット 7 は活用（最良は a）
        assert allocate(test, 7) == "a"

    def test_exploitation_picks_best_rate(self, bandit_test):
        assert {allocate(bandit_test, b) for b in range(20, 100)} == {"a"}

    def test_ties_prefer_lowest_index(self):
        test = Test(
            id="tie",
            tenant_id="tenant_1",
            allocation_mode=AllocationMode.BANDIT,
            exploration_rate=0.0,
            variants=[
                Variant("control", is_control=True, trials=10, successes=5),
                Variant("a", trials=20, successes=10),
            ],
        )
        assert allocate(test, 50) == "control"

    def test_no_trials_defaults_to_first(self):
        test = Test(
            id="cold",
            tenant_id="tenant_1",
            allocation_mode=AllocationMode.BANDIT,
            exploration_rate=0.1,
            variants=[Variant("control", is_control=True), Variant("a")],
        )
        assert allocate(test, 99) == "control"

    def test_weights_are_ignored(self, bandit_test):
        """バンディット配分では重み合計を検証しない"""
        assert all(v.weight == 0 for v in bandit_test.variants)
        allocate(bandit_test, 50)
