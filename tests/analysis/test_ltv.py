# LTV分析 テスト
"""
LTV（顧客生涯価値）分析の単体テスト

検証観点:
- 期間内の注文のみ集計する（初回コンバージョン前・期間外は除外）
- 平均 50 と 55 のコホートで 30日 LTV のリフトが約 +10% かつ有意
- 短期と長期でリフトの符号が変わる・乖離する場合は long_term_different
- 小さいコホートは計算するが low_confidence
"""

from datetime import date, datetime, timedelta

import numpy as np
import pytest

from abtest_engine.analysis.ltv import (
    CustomerLTVData,
    available_ltv_periods,
    build_customers,
    calculate_lift,
    calculate_ltv,
    compare_ltv,
    ltv_trend,
)
from abtest_engine.models.experiment import (
    AttributionStatus,
    Event,
    EventType,
    Order,
)


COHORT_START = datetime(2024, 1, 1)


def customer(customer_id, variant_id, orders_by_day, start=COHORT_START):
    """初回コンバージョンからの経過日数 -> 金額（ドル）で顧客データを作る"""
    return CustomerLTVData(
        customer_id=customer_id,
        variant_id=variant_id,
        first_conversion_date=start,
        orders=[
            Order(f"{customer_id}_o{i}", customer_id, start + timedelta(days=day),
                  int(round(amount * 100)))
            for i, (day, amount) in enumerate(orders_by_day)
        ],
    )


def standardized_cohort(variant_id, target_mean, size, seed):
    """平均・標準偏差を正確に揃えた 30日以内の売上を持つコホート"""
    rng = np.random.default_rng(seed)
    raw = rng.normal(size=size)
    values = (raw - raw.mean()) / raw.std() * 10.0 + target_mean
    return [
        customer(f"{variant_id}_{i}", variant_id, [(5, float(value))])
        for i, value in enumerate(values)
    ]


# =============================================================================
# CustomerLTVData
# =============================================================================


class TestCustomerLTVData:
    """CustomerLTVData のテスト"""

    def test_revenue_within_period(self):
        c = customer("c1", "control", [(-1, 99.0), (0, 10.0), (30, 20.0), (31, 40.0)])
        assert c.revenue_within(30) == pytest.approx(30.0)
        assert len(c.orders_within(31)) == 3


# =============================================================================
# calculate_ltv
# =============================================================================


class TestCalculateLTV:
    """calculate_ltv のテスト"""

    def test_period_metrics(self, config):
        customers = [
            customer("c1", "control", [(5, 40.0), (20, 60.0), (70, 100.0)]),
            customer("c2", "control", [(10, 50.0)]),
            customer("c3", "control", []),
            customer("x1", "variant_a", [(1, 999.0)]),
        ]

        analysis = calculate_ltv(customers, "control", COHORT_START, config)

        assert analysis.cohort_size == 3
        assert analysis.cohort_date == date(2024, 1, 1)
        day30 = analysis.periods[30]
        assert day30.ltv == pytest.approx(50.0)
        assert day30.order_count == pytest.approx(1.0)
        assert day30.repurchase_rate == pytest.approx(1 / 3)
        assert day30.average_order_value == pytest.approx(50.0)
        assert day30.confidence_interval.lower_bound <= 50.0 <= day30.confidence_interval.upper_bound
        assert analysis.ltv(90) == pytest.approx(250.0 / 3)

    def test_empty_cohort(self, config):
        analysis = calculate_ltv([], "control", COHORT_START, config)

        assert analysis.cohort_size == 0
        assert analysis.low_confidence
        assert all(m.ltv == 0.0 for m in analysis.periods.values())
        assert analysis.periods[30].confidence_interval is None

    def test_low_confidence_flag(self, config):
        customers = [customer(f"c{i}", "control", [(1, 10.0)]) for i in range(29)]
        assert calculate_ltv(customers, "control", COHORT_START, config).low_confidence

        customers.append(customer("c29", "control", [(1, 10.0)]))
        assert not calculate_ltv(customers, "control", COHORT_START, config).low_confidence

    def test_to_dict(self, config):
        data = calculate_ltv(
            [customer("c1", "control", [(1, 10.0)])], "control", COHORT_START, config
        ).to_dict()
        assert data["cohort_date"] == "2024-01-01"
        assert set(data["periods"]) == {"30", "60", "90"}


# =============================================================================
# compare_ltv
# =============================================================================


class TestCompareLTV:
    """compare_ltv のテスト"""

    def test_ten_percent_lift_is_significant(self, config):
        customers = (
            standardized_cohort("control", 50.0, 60, seed=1)
            + standardized_cohort("variant_a", 55.0, 60, seed=2)
        )

        comparison = compare_ltv(customers, "control", "variant_a", COHORT_START, config)

        assert comparison.lift[30] == pytest.approx(10.0, abs=0.1)
        assert comparison.significant[30]
        assert comparison.p_values[30].is_approximate
        assert not comparison.long_term_different
        assert not comparison.low_confidence
        assert comparison.control.is_control
        assert comparison.message.startswith("30-day LTV: +10.0% (significant)")

    def test_sign_flip_is_long_term_different(self, config):
        customers = (
            [customer(f"c{i}", "control", [(5, 100.0), (45, 50.0)]) for i in range(30)]
            + [customer(f"v{i}", "variant_a", [(5, 110.0)]) for i in range(30)]
        )

        comparison = compare_ltv(customers, "control", "variant_a", COHORT_START, config)

        assert comparison.lift[30] == pytest.approx(10.0)
        assert comparison.lift[90] < 0
        assert comparison.long_term_different
        assert "Long-term impact differs from short-term" in comparison.message

    def test_drift_beyond_threshold(self, config):
        customers = (
            [customer(f"c{i}", "control", [(5, 100.0)]) for i in range(30)]
            + [customer(f"v{i}", "variant_a", [(5, 105.0), (60, 15.0)]) for i in range(30)]
        )

        comparison = compare_ltv(customers, "control", "variant_a", COHORT_START, config)

        assert comparison.lift[30] == pytest.approx(5.0)
        assert comparison.lift[90] == pytest.approx(20.0)
        assert comparison.long_term_different

    def test_small_cohort_message(self, config):
        customers = [
            customer("c1", "control", [(5, 100.0)]),
            customer("v1", "variant_a", [(5, 90.0)]),
        ]
        comparison = compare_ltv(customers, "control", "variant_a", COHORT_START, config)

        assert comparison.low_confidence
        assert comparison.message.endswith("treat results as low confidence.")
        assert "30-day LTV: -10.0%" in comparison.message

    def test_zero_control_lift(self, config):
        customers = [
            customer("c1", "control", []),
            customer("v1", "variant_a", [(5, 90.0)]),
        ]
        comparison = compare_ltv(customers, "control", "variant_a", COHORT_START, config)
        assert comparison.lift[30] == 0.0

    def test_to_dict(self, config):
        customers = [customer("c1", "control", [(5, 100.0)]), customer("v1", "variant_a", [])]
        data = compare_ltv(customers, "control", "variant_a", COHORT_START, config).to_dict()
        assert data["p_values"]["30"]["kind"] == "approximate_normal"
        assert data["low_confidence"] is True


# =============================================================================
# 補助関数
# =============================================================================


class TestHelpers:
    """calculate_lift / ltv_trend / available_ltv_periods / build_customers"""

    @pytest.mark.parametrize(
        "control,variant,expected",
        [(100.0, 110.0, 10.0), (100.0, 90.0, -10.0), (0.0, 50.0, 0.0)],
    )
    def test_calculate_lift(self, control, variant, expected):
        assert calculate_lift(control, variant) == pytest.approx(expected)

    def test_ltv_trend(self):
        customers = [
            customer("c1", "control", [(1, 10.0), (10, 10.0)]),
            customer("v1", "variant_a", [(1, 10.0), (20, 20.0)]),
        ]

        trend = ltv_trend(customers, "control", "variant_a", max_days=21, interval=7)

        assert [p.day for p in trend] == [7, 14, 21]
        assert [p.control_ltv for p in trend] == [10.0, 20.0, 20.0]
        assert [p.variant_ltv for p in trend] == [10.0, 10.0, 30.0]
        assert trend[2].lift == pytest.approx(50.0)

    def test_available_ltv_periods(self):
        end = datetime(2024, 1, 1)
        assert available_ltv_periods(end, now=end + timedelta(days=45)) == [30]
        assert available_ltv_periods(end, now=end + timedelta(days=90)) == [30, 60, 90]
        assert available_ltv_periods(end, now=end + timedelta(days=10)) == []

    def test_build_customers(self):
        def conversion(visitor_id, variant_id, day):
            return Event(
                EventType.CONVERSION, "tenant_1", "t1", visitor_id, variant_id,
                occurred_at=COHORT_START + timedelta(days=day),
                attribution_status=AttributionStatus.ATTRIBUTED,
            )

        customers = build_customers(
            [conversion("v1", "control", 3), conversion("v1", "control", 1),
             conversion("v2", None, 1)],
            [Order("o2", "v1", datetime(2024, 1, 9), 500), Order("o1", "v1", datetime(2024, 1, 4), 100)],
        )

        assert len(customers) == 1
        assert customers[0].customer_id == "v1"
        assert customers[0].first_conversion_date == COHORT_START + timedelta(days=1)
        assert [o.order_id for o in customers[0].orders] == ["o1", "o2"]
