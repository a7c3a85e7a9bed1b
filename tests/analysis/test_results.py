# ExperimentService テスト
"""
サービス層の結合テスト（メモリストア使用）

検証観点:
- 割り当て → イベント記録 → 結果集計の一連の流れ
- 有意差のある場合の推奨メッセージと Holm-Bonferroni 補正
- データ無し・標本不足の扱い
- ストア障害時のコントロールへのフェイルオープン
- テスト完了時の割り当て期限設定、LTV 比較
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from abtest_engine.analysis.results import (
    CONVERSION_RATE,
    REVENUE_PER_VISITOR,
    ExperimentService,
)
from abtest_engine.db.store import InMemoryExperimentStore
from abtest_engine.models.errors import PersistenceError, TestStateError
from abtest_engine.models.experiment import (
    AllocationMode,
    Assignment,
    AssignmentStatus,
    Event,
    EventType,
    Order,
    TestStatus,
    Variant,
    VisitorContext,
)


EXPOSED_AT = datetime(2024, 1, 2)
CONVERTED_AT = datetime(2024, 1, 3)


def index_hasher(test_id, visitor_id):
    """visitor_{i} → i % 100 のバケット"""
    return int(visitor_id.split("_")[1]) % 100


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def service(store, config):
    service = ExperimentService(store, config, hasher=index_hasher)
    yield service
    service.close()


def run_traffic(service, test, visitors, converts):
    """訪問者を割り当て、露出とコンバージョン（売上 20.0）を記録してフラッシュする

    Args:
        converts: (i, variant_id) -> コンバージョンするか
    """
    for i in range(visitors):
        visitor_id = f"visitor_{i}"
        result = service.assign_visitor(
            test, VisitorContext(visitor_id, test.tenant_id), now=EXPOSED_AT
        )
        service.track_event(Event(
            EventType.EXPOSURE, test.tenant_id, test.id, visitor_id,
            result.variant_id, occurred_at=EXPOSED_AT,
        ))
        if converts(i, result.variant_id):
            service.track_event(Event(
                EventType.CONVERSION, test.tenant_id, test.id, visitor_id,
                occurred_at=CONVERTED_AT, dedup_key=f"conv_{i}:{test.id}",
            ))
            service.track_event(Event(
                EventType.REVENUE, test.tenant_id, test.id, visitor_id,
                occurred_at=CONVERTED_AT, value=20.0, dedup_key=f"order_{i}:{test.id}",
            ))
    service.flush_events()


def control_10_variant_30(i, variant_id):
    if variant_id == "control":
        return i % 10 == 0
    return i % 10 in (0, 1, 2)


# =============================================================================
# 結果集計
# =============================================================================


class TestGetTestResults:
    """get_test_results のテスト"""

    def test_significant_winner(self, service, make_test):
        test = make_test()
        run_traffic(service, test, 400, control_10_variant_30)

        results = service.get_test_results(test)

        control = results.get_variant("control")
        variant = results.get_variant("variant_a")
        assert (control.visitors, control.conversions) == (200, 20)
        assert (variant.visitors, variant.conversions) == (200, 60)
        assert control.conversion_rate == pytest.approx(0.10)
        assert variant.revenue_per_visitor == pytest.approx(6.0)
        assert variant.conversion_rate_ci.lower_bound <= 0.30 <= variant.conversion_rate_ci.upper_bound

        comparison = results.get_comparison("variant_a")
        assert comparison.name == "control_vs_variant_a"
        assert comparison.is_significant
        assert comparison.relative_lift == pytest.approx(200.0)
        assert comparison.p_value.is_approximate
        assert results.get_comparison("variant_a", REVENUE_PER_VISITOR).is_significant

        assert results.holm.significant_count == 1
        assert results.recommendation.startswith(
            "Statistically significant result. Recommended: Adopt 'variant_a'"
        )
        assert "n=200" in results.recommendation

    def test_no_significant_difference(self, service, make_test):
        test = make_test()
        run_traffic(service, test, 400, lambda i, v: i % 10 == 0)

        results = service.get_test_results(test)

        assert not results.get_comparison("variant_a").is_significant
        assert results.recommendation.startswith("No statistically significant difference")

    def test_no_data(self, service, make_test):
        results = service.get_test_results(make_test())

        assert all(v.visitors == 0 for v in results.variants)
        assert results.recommendation == "No data collected yet. Continue running the experiment."

    def test_insufficient_data(self, service, make_test):
        test = make_test()
        run_traffic(service, test, 1, lambda i, v: True)

        results = service.get_test_results(test)

        assert results.get_comparison("variant_a", CONVERSION_RATE).insufficient_data
        assert results.holm.comparisons == []
        assert results.recommendation.startswith("Insufficient data for comparison")

    def test_quarantined_conversions_are_excluded(self, service, store, make_test):
        test = make_test()
        run_traffic(service, test, 10, lambda i, v: False)
        # 割り当ての無い訪問者のコンバージョン
        service.track_event(Event(
            EventType.CONVERSION, test.tenant_id, test.id, "stranger",
            occurred_at=CONVERTED_AT, dedup_key="stray",
        ))
        service.flush_events()

        results = service.get_test_results(test)

        assert results.excluded_conversions == 1
        assert sum(v.conversions for v in results.variants) == 0

    def test_ltv_comparison_after_end(self, service, store, make_test):
        test = make_test(end_at=datetime(2024, 1, 15))
        run_traffic(service, test, 200, control_10_variant_30)
        store.add_orders(
            Order(f"o_{i}", f"visitor_{i}", CONVERTED_AT + timedelta(days=1), 2000)
            for i in range(200)
        )

        before = service.get_test_results(test, now=datetime(2024, 1, 20))
        after = service.get_test_results(test, now=datetime(2024, 5, 1))

        assert before.ltv_comparisons == []
        assert len(after.ltv_comparisons) == 1
        ltv = after.ltv_comparisons[0]
        assert ltv.variant.variant_id == "variant_a"
        assert set(ltv.lift) == {30, 60, 90}

    def test_to_dict(self, service, make_test):
        test = make_test()
        run_traffic(service, test, 40, control_10_variant_30)

        data = service.get_test_results(test).to_dict()

        assert data["test_id"] == test.id
        assert data["status"] == "running"
        assert {c["metric"] for c in data["comparisons"]} == {CONVERSION_RATE, REVENUE_PER_VISITOR}
        assert data["holm"]["alpha"] == 0.05


# =============================================================================
# 割り当て・フェイルオープン
# =============================================================================


class TestAssignVisitor:
    """assign_visitor のテスト"""

    def test_fail_open_to_control(self, config, make_test):
        failing = MagicMock(spec=InMemoryExperimentStore)
        failing.get_assignment.side_effect = PersistenceError("connection refused")
        service = ExperimentService(failing, config)

        result = service.assign_visitor(make_test(), VisitorContext("v1", "tenant_1"))
        service.close()

        assert result.status == AssignmentStatus.FAIL_OPEN
        assert result.variant_id == "control"
        assert result.assignment.bucket == -1
        assert service.metrics.get_summary()["assignments"]["fail_open"] == 1

    def test_fail_open_without_control(self, config, make_test):
        service = ExperimentService(InMemoryExperimentStore(), config)
        # 重み合計が不正でコントロールも無い
        test = make_test().with_variants([Variant("a", weight=10), Variant("b", weight=10)])

        result = service.assign_visitor(test, VisitorContext("v1", "tenant_1"))
        service.close()

        assert result.status == AssignmentStatus.FAIL_OPEN
        assert result.assignment is None
        assert result.reason == "no_control"

    @pytest.mark.asyncio
    async def test_async_assignment(self, service, make_test):
        result = await service.assign_visitor_async(make_test(), VisitorContext("visitor_7", "tenant_1"))
        assert result.variant_id == "control"


# =============================================================================
# ライフサイクル・バンディット
# =============================================================================


class TestLifecycle:
    """ライフサイクル操作のテスト"""

    def test_complete_expires_assignments(self, service, store, make_test):
        test = make_test()
        run_traffic(service, test, 5, lambda i, v: False)

        completed = service.complete_test(test, now=datetime(2024, 2, 1))

        assert completed.status == TestStatus.COMPLETED
        assert all(
            a.expires_at == datetime(2024, 2, 1)
            for a in store.read_assignments(test.tenant_id, test.id)
        )

    def test_pause_and_resume(self, service, make_test):
        paused = service.pause_test(make_test())
        assert paused.status == TestStatus.PAUSED
        assert service.resume_test(paused).status == TestStatus.RUNNING

    def test_activate_requires_draft(self, service, make_test):
        with pytest.raises(TestStateError):
            service.activate_test(make_test())

    def test_refresh_bandit(self, service, make_test):
        test = make_test(allocation_mode=AllocationMode.BANDIT)
        run_traffic(service, test, 100, control_10_variant_30)

        refreshed = service.refresh_bandit(test)

        # 探索はバケット 0-9（0-4 → control, 5-9 → variant_a）、それ以外は同率のため先頭の control
        assert refreshed.get_variant("control").trials == 95
        assert refreshed.get_variant("control").successes == 10
        assert refreshed.get_variant("variant_a").trials == 5
        assert refreshed.get_variant("variant_a").successes == 0

    def test_refresh_bandit_ignores_late_conversions(self, service, store, make_test):
        test = make_test(
            allocation_mode=AllocationMode.BANDIT,
            start_at=datetime(2024, 1, 1),
            end_at=datetime(2024, 1, 8),
        )
        store.put_assignment_if_absent(Assignment(
            test.tenant_id, test.id, "visitor_1", "control", 50, datetime(2024, 1, 1)
        ))
        store.append_events([
            Event(EventType.EXPOSURE, test.tenant_id, test.id, "visitor_1", "control",
                  occurred_at=datetime(2024, 1, 1)),
            Event(EventType.CONVERSION, test.tenant_id, test.id, "visitor_1", "control",
                  occurred_at=datetime(2024, 7, 20), dedup_key="order_late:checkout_button"),
        ])

        refreshed = service.refresh_bandit(test)

        assert refreshed.get_variant("control").trials == 1
        assert refreshed.get_variant("control").successes == 0
        assert service.get_test_results(test).get_variant("control").conversions == 0
