# 実験サービス
"""
呼び出し側（HTTP ハンドラなど）に公開する操作をまとめたサービス層

公開操作:
    assign_visitor(test, ctx)   -> AssignmentResult
    track_event(event)          -> bool（受け付けたか）
    get_test_results(test)      -> TestResults

割り当てのフェイルオープン:
    ストア障害（PersistenceError）やテスト定義の不備（ConfigurationError）の場合、
    エラーログを出してコントロールを返す（status = fail_open、永続化しない）。
    リクエスト処理を止めないことを優先する。

結果の集計:
    1. テストのイベントと割り当てを読み込み、アトリビューション期間で振り分ける
    2. 露出訪問者（露出が無ければ割り当て）をバリアントごとの母集団とする
    3. 訪問者ごとのコンバージョン有無（0/1）と売上合計をブートストラップで比較
    4. コンバージョン率の比較に Holm-Bonferroni 補正をかける
    5. テスト終了から十分日数が経過していれば LTV を比較

使用例:
    service = ExperimentService(InMemoryExperimentStore(), EngineConfig())
    result = service.assign_visitor(test, VisitorContext("v1", "tenant_1"))
    service.track_event(Event(EventType.EXPOSURE, "tenant_1", test.id, "v1", result.variant_id))
    service.flush_events()
    print(service.get_test_results(test).to_dict())
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from abtest_engine.analysis.ltv import (
    LTVComparison,
    available_ltv_periods,
    build_customers,
    calculate_lift,
    compare_ltv,
)
from abtest_engine.assignment.hasher import BucketFunction, bucket
from abtest_engine.assignment.lifecycle import (
    activate_test,
    complete_test,
    pause_test,
    resume_test,
)
from abtest_engine.assignment.orchestrator import AssignmentOrchestrator
from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.db.store import ExperimentStore
from abtest_engine.models.errors import ConfigurationError, PersistenceError
from abtest_engine.models.experiment import (
    Assignment,
    AssignmentResult,
    AssignmentStatus,
    Event,
    EventType,
    Test,
    VisitorContext,
)
from abtest_engine.monitoring.metrics_collector import EngineMetrics, Timer
from abtest_engine.statistics.bootstrap import (
    BootstrapResult,
    approximate_p_value,
    bootstrap_confidence_interval,
    bootstrap_difference,
    is_significant,
)
from abtest_engine.statistics.core import PValue, mean
from abtest_engine.statistics.multiple_testing import CorrectionResult, holm_bonferroni
from abtest_engine.tracking.attribution import attribute_events
from abtest_engine.tracking.bandit_rewards import apply_reward_snapshot, compute_reward_snapshot
from abtest_engine.tracking.event_tracker import BatchResult, EventTracker


logger = logging.getLogger(__name__)

CONVERSION_RATE = "conversion_rate"
REVENUE_PER_VISITOR = "revenue_per_visitor"


@dataclass
class VariantStats:
    """バリアントの集計値"""
    variant_id: str
    is_control: bool
    visitors: int
    conversions: int
    revenue: float
    conversion_rate: float
    revenue_per_visitor: float
    conversion_rate_ci: Optional[BootstrapResult] = None
    revenue_per_visitor_ci: Optional[BootstrapResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "is_control": self.is_control,
            "visitors": self.visitors,
            "conversions": self.conversions,
            "revenue": self.revenue,
            "conversion_rate": self.conversion_rate,
            "revenue_per_visitor": self.revenue_per_visitor,
            "conversion_rate_ci": (
                self.conversion_rate_ci.to_dict() if self.conversion_rate_ci else None
            ),
            "revenue_per_visitor_ci": (
                self.revenue_per_visitor_ci.to_dict() if self.revenue_per_visitor_ci else None
            ),
        }


@dataclass
class VariantComparison:
    """コントロールとの比較（1指標）"""
    variant_id: str
    control_id: str
    metric: str
    difference: Optional[BootstrapResult] = None
    relative_lift: float = 0.0
    p_value: Optional[PValue] = None
    is_significant: bool = False
    insufficient_data: bool = False

    @property
    def name(self) -> str:
        return f"{self.control_id}_vs_{self.variant_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "control_id": self.control_id,
            "metric": self.metric,
            "difference": self.difference.to_dict() if self.difference else None,
            "relative_lift": self.relative_lift,
            "p_value": self.p_value.to_dict() if self.p_value else None,
            "is_significant": self.is_significant,
            "insufficient_data": self.insufficient_data,
        }


@dataclass
class TestResults:
    """テスト結果"""
    __test__ = False

    test_id: str
    status: str
    variants: List[VariantStats] = field(default_factory=list)
    comparisons: List[VariantComparison] = field(default_factory=list)
    ltv_comparisons: List[LTVComparison] = field(default_factory=list)
    holm: Optional[CorrectionResult] = None
    excluded_conversions: int = 0
    recommendation: str = ""
    generated_at: datetime = field(default_factory=datetime.now)

    def get_variant(self, variant_id: str) -> Optional[VariantStats]:
        for stats in self.variants:
            if stats.variant_id == variant_id:
                return stats
        return None

    def get_comparison(
        self, variant_id: str, metric: str = CONVERSION_RATE
    ) -> Optional[VariantComparison]:
        for comparison in self.comparisons:
            if comparison.variant_id == variant_id and comparison.metric == metric:
                return comparison
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "status": self.status,
            "variants": [v.to_dict() for v in self.variants],
            "comparisons": [c.to_dict() for c in self.comparisons],
            "ltv_comparisons": [c.to_dict() for c in self.ltv_comparisons],
            "holm": self.holm.to_dict() if self.holm else None,
            "excluded_conversions": self.excluded_conversions,
            "recommendation": self.recommendation,
            "generated_at": self.generated_at.isoformat(),
        }


class ExperimentService:
    """割り当て・イベント記録・結果集計を束ねるサービス

    Attributes:
        store: 永続化コラボレーター
        config: エンジン設定
        metrics: メトリクス
        orchestrator: 割り当てオーケストレーター
        tracker: イベントトラッカー
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[EngineConfig] = None,
        metrics: Optional[EngineMetrics] = None,
        hasher: BucketFunction = bucket,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.metrics = metrics or EngineMetrics()
        self.orchestrator = AssignmentOrchestrator(store, self.config, hasher, self.metrics)
        self.tracker = EventTracker(store, self.config, self.metrics)

    # ------------------------------------------------------------------
    # 割り当て
    # ------------------------------------------------------------------

    def assign_visitor(
        self,
        test: Test,
        ctx: VisitorContext,
        now: Optional[datetime] = None,
    ) -> AssignmentResult:
        """訪問者をバリアントに割り当てる（障害時はコントロールにフェイルオープン）"""
        try:
            return self.orchestrator.assign_visitor(test, ctx, now)
        except (PersistenceError, ConfigurationError) as e:
            logger.error(
                f"割り当てに失敗、コントロールを返却: test_id={test.id}, "
                f"visitor_id={ctx.visitor_id}, error={e}"
            )
            return self._fail_open(test, ctx, now)

    async def assign_visitor_async(
        self,
        test: Test,
        ctx: VisitorContext,
        now: Optional[datetime] = None,
    ) -> AssignmentResult:
        return await asyncio.to_thread(self.assign_visitor, test, ctx, now)

    def _fail_open(
        self,
        test: Test,
        ctx: VisitorContext,
        now: Optional[datetime],
    ) -> AssignmentResult:
        control = test.control_variant
        self.metrics.record_assignment(AssignmentStatus.FAIL_OPEN.value)
        if control is None:
            return AssignmentResult(
                status=AssignmentStatus.FAIL_OPEN, assignment=None, reason="no_control"
            )
        assignment = Assignment(
            tenant_id=ctx.tenant_id,
            test_id=test.id,
            visitor_id=ctx.visitor_id,
            variant_id=control.id,
            bucket=-1,
            assigned_at=now or datetime.now(),
        )
        return AssignmentResult(
            status=AssignmentStatus.FAIL_OPEN, assignment=assignment, reason="fail_open"
        )

    # ------------------------------------------------------------------
    # イベント
    # ------------------------------------------------------------------

    def track_event(self, event: Event) -> bool:
        """イベントを記録キューに追加（書き込みは待たない）"""
        return self.tracker.queue_event(event)

    def flush_events(self) -> BatchResult:
        return self.tracker.flush_events()

    def start(self) -> None:
        """イベントのタイマーフラッシュを開始"""
        self.tracker.start()

    def close(self) -> BatchResult:
        """タイマーを止め、残りのイベントを書き込む"""
        return self.tracker.stop()

    # ------------------------------------------------------------------
    # ライフサイクル
    # ------------------------------------------------------------------

    def activate_test(self, test: Test, now: Optional[datetime] = None) -> Test:
        return activate_test(test, now)

    def pause_test(self, test: Test) -> Test:
        return pause_test(test)

    def resume_test(self, test: Test) -> Test:
        return resume_test(test)

    def complete_test(self, test: Test, now: Optional[datetime] = None) -> Test:
        """テストを完了し、記録済みの割り当てに有効期限を設定する

        Raises:
            TestStateError: running / paused 以外の場合
            PersistenceError: 有効期限の記録に失敗した場合
        """
        completed = complete_test(test, now)
        expired = self.store.expire_assignments(
            completed.tenant_id, completed.id, completed.end_at
        )
        logger.info(f"割り当てを期限切れに設定: test_id={test.id}, count={expired}")
        return completed

    def refresh_bandit(self, test: Test) -> Test:
        """ストアのイベントからバンディット統計を更新したテストを返す

        アトリビューション期間外のコンバージョンは結果集計と同様に数えない。
        """
        events = self.store.read_events(test.tenant_id, test.id)
        assignments = {
            a.visitor_id: a for a in self.store.read_assignments(test.tenant_id, test.id)
        }
        snapshot = compute_reward_snapshot(test, events, self.config, assignments)
        return apply_reward_snapshot(test, snapshot)

    # ------------------------------------------------------------------
    # 結果
    # ------------------------------------------------------------------

    def get_test_results(self, test: Test, now: Optional[datetime] = None) -> TestResults:
        """テスト結果を集計

        Args:
            test: テスト定義
            now: 現在時刻（LTV 分析期間の判定用）

        Returns:
            TestResults

        Raises:
            PersistenceError: イベント・割り当て・注文の読み込みに失敗した場合
        """
        events = self.store.read_events(test.tenant_id, test.id)
        assignments = {
            a.visitor_id: a for a in self.store.read_assignments(test.tenant_id, test.id)
        }
        report = attribute_events(test, events, self.config, assignments)

        population: Dict[str, str] = {
            visitor_id: a.variant_id for visitor_id, a in assignments.items()
        }
        for visitor_id, exposure in report.first_exposures.items():
            if exposure.variant_id is not None:
                population[visitor_id] = exposure.variant_id

        converted = set()
        revenue: Dict[str, float] = {}
        for event in report.attributed:
            if population.get(event.visitor_id) != event.variant_id:
                continue
            converted.add(event.visitor_id)
            if event.event_type == EventType.REVENUE:
                revenue[event.visitor_id] = revenue.get(event.visitor_id, 0.0) + event.value

        conversion_values: Dict[str, List[float]] = {v.id: [] for v in test.variants}
        revenue_values: Dict[str, List[float]] = {v.id: [] for v in test.variants}
        for visitor_id, variant_id in population.items():
            if variant_id not in conversion_values:
                continue
            conversion_values[variant_id].append(1.0 if visitor_id in converted else 0.0)
            revenue_values[variant_id].append(revenue.get(visitor_id, 0.0))

        results = TestResults(
            test_id=test.id,
            status=test.status.value,
            excluded_conversions=len(report.excluded),
        )

        with Timer() as timer:
            for variant in test.variants:
                results.variants.append(
                    self._variant_stats(
                        variant.id,
                        variant.is_control,
                        conversion_values[variant.id],
                        revenue_values[variant.id],
                    )
                )

            control = test.control_variant
            if control is not None:
                for variant in test.variants:
                    if variant.id == control.id:
                        continue
                    for metric, values in (
                        (CONVERSION_RATE, conversion_values),
                        (REVENUE_PER_VISITOR, revenue_values),
                    ):
                        results.comparisons.append(
                            self._compare(
                                control.id, variant.id, metric,
                                values[control.id], values[variant.id],
                            )
                        )
                results.ltv_comparisons = self._ltv_comparisons(
                    test, control.id, report.attributed, now
                )

        self.metrics.record_bootstrap_duration(timer.elapsed)

        primary = [
            c for c in results.comparisons
            if c.metric == CONVERSION_RATE and not c.insufficient_data
        ]
        results.holm = holm_bonferroni(
            [(c.name, c.p_value.value) for c in primary],
            alpha=self.config.significance_level,
        )
        results.recommendation = self._recommendation(results, primary)

        logger.info(
            f"テスト結果を集計: test_id={test.id}, visitors={len(population)}, "
            f"comparisons={len(results.comparisons)}, "
            f"significant={results.holm.significant_count}"
        )
        return results

    def _variant_stats(
        self,
        variant_id: str,
        is_control: bool,
        conversions: Sequence[float],
        revenue: Sequence[float],
    ) -> VariantStats:
        visitors = len(conversions)
        return VariantStats(
            variant_id=variant_id,
            is_control=is_control,
            visitors=visitors,
            conversions=int(sum(conversions)),
            revenue=float(sum(revenue)),
            conversion_rate=mean(conversions),
            revenue_per_visitor=mean(revenue),
            conversion_rate_ci=self._interval(conversions),
            revenue_per_visitor_ci=self._interval(revenue),
        )

    def _interval(self, values: Sequence[float]) -> BootstrapResult:
        return bootstrap_confidence_interval(
            values,
            confidence_level=self.config.confidence_level,
            num_samples=self.config.bootstrap_samples,
            seed=self.config.bootstrap_seed,
            config=self.config,
        )

    def _compare(
        self,
        control_id: str,
        variant_id: str,
        metric: str,
        control_values: Sequence[float],
        variant_values: Sequence[float],
    ) -> VariantComparison:
        comparison = VariantComparison(variant_id=variant_id, control_id=control_id, metric=metric)
        if len(control_values) < 2 or len(variant_values) < 2:
            comparison.insufficient_data = True
            return comparison

        try:
            difference = bootstrap_difference(
                control_values,
                variant_values,
                confidence_level=self.config.confidence_level,
                num_samples=self.config.bootstrap_samples,
                seed=self.config.bootstrap_seed,
                config=self.config,
            )
        except ValueError as e:
            logger.warning(
                f"比較を計算できません: variant_id={variant_id}, metric={metric}, error={e}"
            )
            comparison.insufficient_data = True
            return comparison

        comparison.difference = difference
        comparison.relative_lift = calculate_lift(mean(control_values), mean(variant_values))
        comparison.p_value = approximate_p_value(difference)
        comparison.is_significant = is_significant(difference)
        return comparison

    def _ltv_comparisons(
        self,
        test: Test,
        control_id: str,
        attributed: Sequence[Event],
        now: Optional[datetime],
    ) -> List[LTVComparison]:
        if test.end_at is None or test.start_at is None:
            return []
        periods = available_ltv_periods(test.end_at, now, self.config.ltv_periods)
        if not periods:
            return []

        conversions = [
            e for e in attributed
            if e.event_type in (EventType.CONVERSION, EventType.REVENUE)
        ]
        customer_ids = sorted({e.visitor_id for e in conversions})
        if not customer_ids:
            return []
        orders = self.store.read_orders(customer_ids, start=test.start_at)
        customers = build_customers(conversions, orders)

        config = replace(self.config, ltv_periods=periods)
        return [
            compare_ltv(customers, control_id, variant.id, test.start_at, config)
            for variant in test.variants
            if variant.id != control_id
        ]

    def _recommendation(
        self,
        results: TestResults,
        primary: List[VariantComparison],
    ) -> str:
        if not any(stats.visitors for stats in results.variants):
            return "No data collected yet. Continue running the experiment."

        if not primary:
            return "Insufficient data for comparison. Continue running the experiment."

        significant = {
            c.comparison for c in results.holm.comparisons if c.is_significant
        }
        winners = [
            c for c in primary
            if c.name in significant and c.difference.estimate > 0
        ]
        if winners:
            best = max(winners, key=lambda c: c.relative_lift)
            stats = results.get_variant(best.variant_id)
            return (
                f"Statistically significant result. "
                f"Recommended: Adopt '{best.variant_id}' "
                f"(conversion_rate={stats.conversion_rate:.4f}, n={stats.visitors}, "
                f"lift={best.relative_lift:+.1f}%)"
            )

        return (
            "No statistically significant difference detected. "
            "Consider extending the experiment duration or accepting the control."
        )
