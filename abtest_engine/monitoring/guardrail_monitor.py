# ガードレール監視
"""
実行中テストの健全性を定期的に評価し、異常を構造化アラートとして通知する

チェック:
- サンプル比率不一致（SRM）: バリアントごとの露出訪問者数を設定重みと比較する
  カイ二乗適合度検定（scipy.stats.chisquare）。p < srm_alpha で検出。
  p < 0.001 → high、p < 0.005 → medium、それ以外 → low。
  バンディット配分は意図的に比率が変わるため対象外。
- 保護指標の劣化: 訪問者ごとの指標値をコントロールと比較し、
  bootstrap_difference の区間が悪化方向で 0 を含まず、かつ相対劣化が
  許容値（tolerance）を超えたら検出。covariate_provider があれば実験前の値で
  CUPED 補正（全訪問者で共通の θ）してから比較する。実験前の値が無い訪問者は 0。
- ノベルティ効果: 比較群ごとの日次コンバージョン率リフトに指数減衰モデルを当てはめ、
  減衰していれば検出。まだ安定していなければ medium、安定済みなら low。
- 母集団ドリフト: 初回露出時刻の曜日・時間帯の分布を前期と後期で比較（常に実行）。
  snapshot_provider があれば訪問者属性（デバイス・国など）の構成も比較する。

モニターはテストを変更しない。一時停止の判断は運用者が行う。

使用例:
    monitor = GuardrailMonitor(
        store,
        config,
        alert_handlers=[lambda alert: notify(alert.to_dict())],
        guardrails={"t1": [GuardrailMetric("revenue_per_visitor", EventType.REVENUE)]},
    )
    alerts = monitor.evaluate(test)

    stop = threading.Event()
    threading.Thread(target=monitor.run_periodic, args=(list_running_tests, stop)).start()
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from scipy import stats

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.db.store import ExperimentStore
from abtest_engine.models.errors import PersistenceError
from abtest_engine.models.experiment import (
    AllocationMode,
    AttributionStatus,
    Event,
    EventType,
    Test,
)
from abtest_engine.monitoring.metrics_collector import EngineMetrics
from abtest_engine.statistics.bootstrap import approximate_p_value, bootstrap_difference
from abtest_engine.statistics.core import PValue, PValueKind, mean
from abtest_engine.statistics.cuped import calculate_adjusted_values
from abtest_engine.statistics.drift import (
    DriftSeverity,
    VisitorSnapshot,
    detect_drift,
    detect_time_drift,
)
from abtest_engine.statistics.novelty import DailyLift, detect_novelty_effect
from abtest_engine.tracking.attribution import first_exposures


logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """アラートの重大度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class GuardrailCheck(str, Enum):
    """チェックの種類"""
    SAMPLE_RATIO_MISMATCH = "sample_ratio_mismatch"
    METRIC_DEGRADATION = "metric_degradation"
    NOVELTY_EFFECT = "novelty_effect"
    POPULATION_DRIFT = "population_drift"


SRM_RECOMMENDATION = (
    "Investigate traffic allocation implementation. "
    "Check for bot filtering, caching issues, or implementation bugs."
)


@dataclass(frozen=True)
class GuardrailMetric:
    """保護指標の定義

    訪問者ごとの値は、revenue イベントなら value の合計、
    それ以外のイベント種別なら件数とする（該当イベントが無い訪問者は 0）。
    """
    name: str
    event_type: EventType
    event_name: Optional[str] = None
    """custom イベントの名前で絞り込む場合に指定"""
    higher_is_better: bool = True
    tolerance: Optional[float] = None
    """許容する相対劣化（None の場合は config.guardrail_tolerance）"""


@dataclass
class GuardrailAlert:
    """ガードレールアラート"""
    test_id: str
    check: GuardrailCheck
    metric_name: str
    severity: AlertSeverity
    observed: Any
    expected: Any
    recommended_action: str
    p_value: Optional[PValue] = None
    variant_id: Optional[str] = None
    detected_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "check": self.check.value,
            "metric_name": self.metric_name,
            "severity": self.severity.value,
            "observed": self.observed,
            "expected": self.expected,
            "recommended_action": self.recommended_action,
            "p_value": self.p_value.to_dict() if self.p_value else None,
            "variant_id": self.variant_id,
            "detected_at": self.detected_at.isoformat(),
        }


AlertHandler = Callable[[GuardrailAlert], None]
# (テスト, 保護指標) -> visitor_id -> 実験前の同じ指標の値
CovariateProvider = Callable[[Test, GuardrailMetric], Dict[str, float]]
SnapshotProvider = Callable[[Test], Sequence[VisitorSnapshot]]

_DRIFT_SEVERITY = {
    DriftSeverity.LOW: AlertSeverity.LOW,
    DriftSeverity.MEDIUM: AlertSeverity.MEDIUM,
    DriftSeverity.HIGH: AlertSeverity.HIGH,
}


class GuardrailMonitor:
    """ガードレール監視クラス

    Attributes:
        store: イベントを読み出す永続化コラボレーター
        config: エンジン設定（srm_alpha, srm_min_sample_size, guardrail_tolerance など）
        alert_handlers: アラートの通知先
        guardrails: test_id -> 保護指標のリスト
        covariate_provider: 保護指標の実験前の値（CUPED 補正用、オプション）
        snapshot_provider: 訪問者属性（構成ドリフト判定用、オプション）
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[EngineConfig] = None,
        alert_handlers: Sequence[AlertHandler] = (),
        guardrails: Optional[Dict[str, List[GuardrailMetric]]] = None,
        metrics: Optional[EngineMetrics] = None,
        covariate_provider: Optional[CovariateProvider] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.alert_handlers = list(alert_handlers)
        self.guardrails = guardrails or {}
        self.metrics = metrics
        self.covariate_provider = covariate_provider
        self.snapshot_provider = snapshot_provider

    def check_sample_ratio_mismatch(
        self,
        test: Test,
        observed_counts: Dict[str, int],
    ) -> Optional[GuardrailAlert]:
        """サンプル比率不一致を検定

        Args:
            test: テスト定義（固定配分の重みを期待比率とする）
            observed_counts: variant_id -> 露出訪問者数

        Returns:
            検出した場合は GuardrailAlert、それ以外は None
        """
        if test.allocation_mode == AllocationMode.BANDIT:
            return None

        weighted = [v for v in test.variants if v.weight > 0]
        if len(weighted) < 2:
            return None

        observed = [int(observed_counts.get(v.id, 0)) for v in weighted]
        total = sum(observed)
        if total < self.config.srm_min_sample_size:
            return None

        weight_total = sum(v.weight for v in weighted)
        expected = [total * v.weight / weight_total for v in weighted]

        chi_square, p = stats.chisquare(f_obs=observed, f_exp=expected)
        p_value = float(p)
        if p_value >= self.config.srm_alpha:
            return None

        if p_value < 0.001:
            severity = AlertSeverity.HIGH
        elif p_value < 0.005:
            severity = AlertSeverity.MEDIUM
        else:
            severity = AlertSeverity.LOW

        return GuardrailAlert(
            test_id=test.id,
            check=GuardrailCheck.SAMPLE_RATIO_MISMATCH,
            metric_name="sample_ratio",
            severity=severity,
            observed={v.id: round(c / total, 4) for v, c in zip(weighted, observed)},
            expected={v.id: round(v.weight / weight_total, 4) for v in weighted},
            recommended_action=SRM_RECOMMENDATION,
            p_value=PValue(value=p_value, kind=PValueKind.CHI_SQUARED),
        )

    def check_metric_degradation(
        self,
        test: Test,
        metric: GuardrailMetric,
        control_values: Sequence[float],
        variant_values: Sequence[float],
        variant_id: Optional[str] = None,
    ) -> Optional[GuardrailAlert]:
        """保護指標の劣化を検定

        Args:
            metric: 保護指標の定義
            control_values: コントロール群の訪問者ごとの値
            variant_values: 比較群の訪問者ごとの値

        Returns:
            劣化を検出した場合は GuardrailAlert、それ以外は None
        """
        control_mean = mean(control_values)
        if len(control_values) == 0 or len(variant_values) == 0 or control_mean == 0:
            return None

        tolerance = (
            metric.tolerance if metric.tolerance is not None else self.config.guardrail_tolerance
        )
        result = bootstrap_difference(
            control_values,
            variant_values,
            confidence_level=self.config.confidence_level,
            num_samples=self.config.bootstrap_samples,
            seed=self.config.bootstrap_seed,
            config=self.config,
        )
        relative_change = result.estimate / abs(control_mean)

        if metric.higher_is_better:
            harmful = result.upper_bound < 0
            degradation = -relative_change
        else:
            harmful = result.lower_bound > 0
            degradation = relative_change

        if not harmful or degradation <= tolerance:
            return None

        if degradation > tolerance * 4:
            severity = AlertSeverity.CRITICAL
        elif degradation > tolerance * 2:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        return GuardrailAlert(
            test_id=test.id,
            check=GuardrailCheck.METRIC_DEGRADATION,
            metric_name=metric.name,
            severity=severity,
            observed=round(mean(variant_values), 6),
            expected=round(control_mean, 6),
            recommended_action=(
                f"Review variant '{variant_id}' before continuing: {metric.name} is "
                f"{degradation * 100:.1f}% worse than control (tolerance {tolerance * 100:.1f}%). "
                f"Consider pausing the test."
            ),
            p_value=approximate_p_value(result),
            variant_id=variant_id,
        )

    def check_novelty_effect(
        self,
        test: Test,
        daily: Sequence[DailyLift],
        variant_id: Optional[str] = None,
    ) -> Optional[GuardrailAlert]:
        """日次リフトの減衰（ノベルティ効果）を判定

        Returns:
            検出した場合は GuardrailAlert（安定前は medium、安定後は low）、それ以外は None
        """
        result = detect_novelty_effect(
            daily,
            min_days=self.config.novelty_min_days,
            decay_threshold=self.config.novelty_decay_threshold,
            fit_threshold=self.config.novelty_fit_threshold,
            stability_threshold=self.config.novelty_stability_threshold,
        )
        if not result.detected:
            return None

        return GuardrailAlert(
            test_id=test.id,
            check=GuardrailCheck.NOVELTY_EFFECT,
            metric_name="conversion_rate_lift",
            severity=AlertSeverity.LOW if result.is_stable else AlertSeverity.MEDIUM,
            observed=round(result.current_lift, 4),
            expected=round(result.stabilized_lift, 4),
            recommended_action=f"{result.message} {result.recommendation}",
            variant_id=variant_id,
        )

    def check_population_drift(
        self,
        test: Test,
        arrivals: Sequence[datetime],
        snapshots: Optional[Sequence[VisitorSnapshot]] = None,
    ) -> List[GuardrailAlert]:
        """前期と後期の訪問者の到着時刻・属性構成を比較

        Args:
            arrivals: 訪問者ごとの初回露出時刻
            snapshots: 訪問者属性（None なら到着時刻のみ比較）

        Returns:
            検出したアラートのリスト
        """
        options = {
            "alpha": self.config.drift_alpha,
            "period_fraction": self.config.drift_period_fraction,
            "min_samples": self.config.drift_min_samples,
        }
        alerts: List[GuardrailAlert] = []

        timing = detect_time_drift(arrivals, **options)
        if timing.detected:
            changed = [d for d in (timing.weekday, timing.hour) if d is not None and d.significant]
            alerts.append(GuardrailAlert(
                test_id=test.id,
                check=GuardrailCheck.POPULATION_DRIFT,
                metric_name="arrival_time",
                severity=AlertSeverity.MEDIUM if len(changed) == 2 else AlertSeverity.LOW,
                observed={d.dimension: d.after for d in changed},
                expected={d.dimension: d.before for d in changed},
                recommended_action=(
                    f"{timing.message} Check for campaigns or scheduling changes "
                    f"and compare results within stable periods."
                ),
                p_value=min((d.p_value for d in changed), key=lambda p: p.value),
            ))

        if snapshots is not None:
            composition = detect_drift(snapshots, **options)
            if composition.detected:
                drifting = composition.significant_dimensions
                alerts.append(GuardrailAlert(
                    test_id=test.id,
                    check=GuardrailCheck.POPULATION_DRIFT,
                    metric_name="visitor_composition",
                    severity=_DRIFT_SEVERITY.get(composition.severity, AlertSeverity.LOW),
                    observed={d.dimension: d.after for d in drifting},
                    expected={d.dimension: d.before for d in drifting},
                    recommended_action=" ".join([composition.message] + composition.recommendations),
                    p_value=min((d.p_value for d in drifting), key=lambda p: p.value),
                ))

        return alerts

    def evaluate(self, test: Test) -> List[GuardrailAlert]:
        """ストアのイベントから全チェックを実行し、アラートを通知する

        Raises:
            PersistenceError: イベントの読み込みに失敗した場合
        """
        events = self.store.read_events(test.tenant_id, test.id)
        exposures = first_exposures(events)

        alerts: List[GuardrailAlert] = []

        counts: Dict[str, int] = {}
        for exposure in exposures.values():
            if exposure.variant_id is not None:
                counts[exposure.variant_id] = counts.get(exposure.variant_id, 0) + 1
        srm = self.check_sample_ratio_mismatch(test, counts)
        if srm is not None:
            alerts.append(srm)

        control = test.control_variant
        for metric in self.guardrails.get(test.id, []):
            if control is None:
                break
            values = self._per_visitor_values(metric, events, exposures)
            if self.covariate_provider is not None:
                values = self._cuped_adjusted(test, metric, values)
            for variant in test.variants:
                if variant.id == control.id:
                    continue
                alert = self.check_metric_degradation(
                    test,
                    metric,
                    list(values.get(control.id, {}).values()),
                    list(values.get(variant.id, {}).values()),
                    variant_id=variant.id,
                )
                if alert is not None:
                    alerts.append(alert)

        if control is not None:
            for variant in test.variants:
                if variant.id == control.id:
                    continue
                daily = self._daily_lift(events, exposures, control.id, variant.id)
                alert = self.check_novelty_effect(test, daily, variant_id=variant.id)
                if alert is not None:
                    alerts.append(alert)

        snapshots = self.snapshot_provider(test) if self.snapshot_provider is not None else None
        alerts.extend(self.check_population_drift(
            test,
            [exposure.occurred_at for exposure in exposures.values()],
            snapshots,
        ))

        for alert in alerts:
            self._emit(alert)
        return alerts

    def run_periodic(
        self,
        test_provider: Callable[[], Iterable[Test]],
        stop_event: threading.Event,
        interval_seconds: Optional[float] = None,
    ) -> None:
        """stop_event がセットされるまで定期的に evaluate を実行

        テスト一覧の取得や1つのテストの評価が失敗しても監視ループは止めない
        （エラーログを出して次のテスト・次の周期へ）。
        """
        interval = interval_seconds or self.config.guardrail_interval_seconds
        logger.info(f"ガードレール監視開始: interval={interval}s")

        while True:
            self._run_once(test_provider)
            if stop_event.wait(interval):
                break

        logger.info("ガードレール監視停止")

    def _run_once(self, test_provider: Callable[[], Iterable[Test]]) -> None:
        try:
            tests = list(test_provider())
        except Exception as e:
            logger.exception(f"監視対象テストの取得に失敗: error={e}")
            return

        for test in tests:
            if not test.is_running:
                continue
            try:
                self.evaluate(test)
            except PersistenceError as e:
                logger.error(f"ガードレール評価に失敗: test_id={test.id}, error={e}")
            except Exception as e:
                logger.exception(f"ガードレール評価で予期しないエラー: test_id={test.id}, error={e}")

    def _per_visitor_values(
        self,
        metric: GuardrailMetric,
        events: Sequence[Event],
        exposures: Dict[str, Event],
    ) -> Dict[str, Dict[str, float]]:
        """variant_id -> visitor_id -> 露出訪問者ごとの指標値"""
        totals: Dict[str, float] = {visitor_id: 0.0 for visitor_id in exposures}
        for event in events:
            if event.event_type != metric.event_type or event.visitor_id not in totals:
                continue
            if metric.event_name is not None and event.name != metric.event_name:
                continue
            if event.is_conversion and event.attribution_status != AttributionStatus.ATTRIBUTED:
                continue
            totals[event.visitor_id] += (
                event.value if event.event_type == EventType.REVENUE else 1.0
            )

        values: Dict[str, Dict[str, float]] = {}
        for visitor_id, exposure in exposures.items():
            if exposure.variant_id is None:
                continue
            values.setdefault(exposure.variant_id, {})[visitor_id] = totals[visitor_id]
        return values

    def _cuped_adjusted(
        self,
        test: Test,
        metric: GuardrailMetric,
        values: Dict[str, Dict[str, float]],
    ) -> Dict[str, Dict[str, float]]:
        """全訪問者で共通の θ を使って CUPED 補正した値（補正しない場合は元の値）"""
        pre_experiment = self.covariate_provider(test, metric)
        merged = {
            visitor_id: value
            for by_visitor in values.values()
            for visitor_id, value in by_visitor.items()
        }
        adjusted, result = calculate_adjusted_values(
            merged,
            {visitor_id: pre_experiment.get(visitor_id, 0.0) for visitor_id in merged},
            min_correlation=self.config.cuped_min_correlation,
            covariate=metric.name,
        )
        if not result.applied:
            return values

        logger.info(
            f"CUPED補正を適用: test_id={test.id}, metric={metric.name}, "
            f"theta={result.theta:.4f}, variance_reduction={result.variance_reduction:.1f}%"
        )
        return {
            variant_id: {visitor_id: adjusted[visitor_id] for visitor_id in by_visitor}
            for variant_id, by_visitor in values.items()
        }

    def _daily_lift(
        self,
        events: Sequence[Event],
        exposures: Dict[str, Event],
        control_id: str,
        variant_id: str,
    ) -> List[DailyLift]:
        """日ごとの新規露出訪問者数と、その日にコンバージョンした露出訪問者数"""
        visitors: Dict[Tuple[date, str], int] = {}
        for exposure in exposures.values():
            key = (exposure.occurred_at.date(), exposure.variant_id)
            visitors[key] = visitors.get(key, 0) + 1

        converted: Dict[Tuple[date, str], Set[str]] = {}
        for event in events:
            if not event.is_conversion or event.attribution_status != AttributionStatus.ATTRIBUTED:
                continue
            exposure = exposures.get(event.visitor_id)
            if exposure is None:
                continue
            key = (event.occurred_at.date(), exposure.variant_id)
            converted.setdefault(key, set()).add(event.visitor_id)

        days = sorted({day for day, _ in visitors} | {day for day, _ in converted})
        return [
            DailyLift(
                day=day,
                control_visitors=visitors.get((day, control_id), 0),
                control_conversions=len(converted.get((day, control_id), ())),
                variant_visitors=visitors.get((day, variant_id), 0),
                variant_conversions=len(converted.get((day, variant_id), ())),
            )
            for day in days
        ]

    def _emit(self, alert: GuardrailAlert) -> None:
        logger.warning(
            f"ガードレールアラート: test_id={alert.test_id}, check={alert.check.value}, "
            f"metric={alert.metric_name}, severity={alert.severity.value}, "
            f"observed={alert.observed}, expected={alert.expected}"
        )
        if self.metrics is not None:
            self.metrics.record_guardrail_alert(alert.check.value, alert.severity.value)
        for handler in self.alert_handlers:
            try:
                handler(alert)
            except Exception as e:
                logger.warning(
                    f"アラート通知に失敗: test_id={alert.test_id}, "
                    f"check={alert.check.value}, error={e}"
                )
