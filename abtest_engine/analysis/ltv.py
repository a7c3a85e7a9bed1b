# LTV（顧客生涯価値）分析
"""
テストの長期的な売上インパクトを、初回コンバージョン後 30/60/90 日のコホートで比較する

期間ごとの指標（customer の初回コンバージョン日時から period 日以内の注文）:
    LTV          = 注文金額合計（ドル）の平均
    order_count  = 注文数の平均
    repurchase   = 期間内に2回以上注文した顧客の割合
    AOV          = 注文のある顧客の (合計金額 / 注文数) の平均
    信頼区間      = 顧客ごとの LTV に対するブートストラップ区間

比較:
    lift = (variant - control) / control × 100（control が 0 なら 0）
    有意性 = 顧客ごとの LTV の差に対する bootstrap_difference の区間が 0 を含まない
    p値 = approximate_p_value（正規CDF近似。厳密な p値ではない）
    long_term_different = 最短期間と最長期間でリフトの符号が変わる、
                          またはリフトの差が ltv_drift_threshold（10ポイント）を超える

コホートが min_cohort_size（30）未満でも計算はするが low_confidence を立てる。
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.models.experiment import Event, Order
from abtest_engine.statistics.bootstrap import (
    BootstrapResult,
    approximate_p_value,
    bootstrap_confidence_interval,
    bootstrap_difference,
    is_significant,
)
from abtest_engine.statistics.core import PValue, mean


logger = logging.getLogger(__name__)


@dataclass
class CustomerLTVData:
    """LTV計算用の顧客データ"""
    customer_id: str
    variant_id: str
    first_conversion_date: datetime
    orders: List[Order] = field(default_factory=list)

    def revenue_within(self, days: int) -> float:
        """初回コンバージョンから days 日以内の売上（ドル）"""
        return sum(o.amount_cents for o in self.orders_within(days)) / 100

    def orders_within(self, days: int) -> List[Order]:
        period_end = self.first_conversion_date + timedelta(days=days)
        return [
            o for o in self.orders
            if self.first_conversion_date <= o.order_date <= period_end
        ]


@dataclass
class PeriodMetrics:
    """1つの分析期間の指標"""
    ltv: float = 0.0
    order_count: float = 0.0
    repurchase_rate: float = 0.0
    average_order_value: float = 0.0
    confidence_interval: Optional[BootstrapResult] = None

    def to_dict(self) -> Dict[str, Any]:
        ci = self.confidence_interval
        return {
            "ltv": self.ltv,
            "order_count": self.order_count,
            "repurchase_rate": self.repurchase_rate,
            "average_order_value": self.average_order_value,
            "confidence_interval": (
                {"lower": ci.lower_bound, "upper": ci.upper_bound} if ci else None
            ),
        }


@dataclass
class LTVAnalysis:
    """バリアント1つの LTV 分析結果"""
    variant_id: str
    cohort_date: date
    cohort_size: int
    periods: Dict[int, PeriodMetrics] = field(default_factory=dict)
    is_control: bool = False
    low_confidence: bool = False

    def ltv(self, period: int) -> float:
        metrics = self.periods.get(period)
        return metrics.ltv if metrics else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "is_control": self.is_control,
            "cohort_date": self.cohort_date.isoformat(),
            "cohort_size": self.cohort_size,
            "low_confidence": self.low_confidence,
            "periods": {str(p): m.to_dict() for p, m in self.periods.items()},
        }


@dataclass
class LTVComparison:
    """コントロールとバリアントの LTV 比較"""
    control: LTVAnalysis
    variant: LTVAnalysis
    lift: Dict[int, float] = field(default_factory=dict)
    significant: Dict[int, bool] = field(default_factory=dict)
    p_values: Dict[int, PValue] = field(default_factory=dict)
    differences: Dict[int, BootstrapResult] = field(default_factory=dict)
    long_term_different: bool = False
    message: str = ""

    @property
    def low_confidence(self) -> bool:
        return self.control.low_confidence or self.variant.low_confidence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "control": self.control.to_dict(),
            "variant": self.variant.to_dict(),
            "lift": {str(p): v for p, v in self.lift.items()},
            "significant": {str(p): v for p, v in self.significant.items()},
            "p_values": {str(p): v.to_dict() for p, v in self.p_values.items()},
            "long_term_different": self.long_term_different,
            "low_confidence": self.low_confidence,
            "message": self.message,
        }


@dataclass(frozen=True)
class LTVTrendPoint:
    day: int
    control_ltv: float
    variant_ltv: float
    lift: float


def calculate_ltv(
    customers: Sequence[CustomerLTVData],
    variant_id: str,
    cohort_start_date: datetime,
    config: Optional[EngineConfig] = None,
) -> LTVAnalysis:
    """バリアントのコホートについて期間ごとの LTV を計算

    Args:
        customers: 全顧客データ（variant_id で絞り込む）
        variant_id: 分析するバリアント
        cohort_start_date: コホート開始日（テスト開始日）
        config: 分析期間・信頼水準・ブートストラップ回数・最小コホートサイズ

    Returns:
        LTVAnalysis（コホートが空なら全指標 0）
    """
    config = config or EngineConfig()
    cohort = [c for c in customers if c.variant_id == variant_id]
    cohort_size = len(cohort)
    analysis = LTVAnalysis(
        variant_id=variant_id,
        cohort_date=_as_date(cohort_start_date),
        cohort_size=cohort_size,
        low_confidence=cohort_size < config.min_cohort_size,
    )

    for period in config.ltv_periods:
        if cohort_size == 0:
            analysis.periods[period] = PeriodMetrics()
            continue

        ltvs: List[float] = []
        order_counts: List[int] = []
        aovs: List[float] = []
        for customer in cohort:
            orders = customer.orders_within(period)
            revenue = sum(o.amount_cents for o in orders)
            ltvs.append(revenue / 100)
            order_counts.append(len(orders))
            if orders:
                aovs.append(revenue / len(orders) / 100)

        analysis.periods[period] = PeriodMetrics(
            ltv=mean(ltvs),
            order_count=mean(order_counts),
            repurchase_rate=sum(1 for c in order_counts if c >= 2) / cohort_size,
            average_order_value=mean(aovs),
            confidence_interval=bootstrap_confidence_interval(
                ltvs,
                confidence_level=config.confidence_level,
                num_samples=config.bootstrap_samples,
                seed=config.bootstrap_seed,
                config=config,
            ),
        )

    if analysis.low_confidence:
        logger.info(
            f"LTVコホートが小さい: variant_id={variant_id}, "
            f"cohort_size={cohort_size}, min={config.min_cohort_size}"
        )
    return analysis


def compare_ltv(
    customers: Sequence[CustomerLTVData],
    control_id: str,
    variant_id: str,
    cohort_start_date: datetime,
    config: Optional[EngineConfig] = None,
) -> LTVComparison:
    """コントロールとバリアントの LTV を比較

    Returns:
        LTVComparison
    """
    config = config or EngineConfig()
    control = calculate_ltv(customers, control_id, cohort_start_date, config)
    control.is_control = True
    variant = calculate_ltv(customers, variant_id, cohort_start_date, config)

    control_customers = [c for c in customers if c.variant_id == control_id]
    variant_customers = [c for c in customers if c.variant_id == variant_id]

    comparison = LTVComparison(control=control, variant=variant)
    for period in config.ltv_periods:
        comparison.lift[period] = calculate_lift(control.ltv(period), variant.ltv(period))

        diff = bootstrap_difference(
            [c.revenue_within(period) for c in control_customers],
            [c.revenue_within(period) for c in variant_customers],
            confidence_level=config.confidence_level,
            num_samples=config.bootstrap_samples,
            seed=config.bootstrap_seed,
            config=config,
        )
        comparison.differences[period] = diff
        comparison.significant[period] = is_significant(diff)
        comparison.p_values[period] = approximate_p_value(diff)

    periods = sorted(config.ltv_periods)
    short_lift = comparison.lift[periods[0]]
    long_lift = comparison.lift[periods[-1]]
    comparison.long_term_different = (
        _sign(short_lift) != _sign(long_lift)
        or abs(long_lift - short_lift) > config.ltv_drift_threshold
    )
    comparison.message = ltv_message(comparison, periods[0], periods[-1])
    return comparison


def calculate_lift(control: float, variant: float) -> float:
    """リフト率（%）。control が 0 なら 0"""
    if control == 0:
        return 0.0
    return (variant - control) / control * 100


def ltv_message(comparison: LTVComparison, short_period: int, long_period: int) -> str:
    """比較結果の要約メッセージ"""
    parts = []
    for period in (short_period, long_period):
        lift = comparison.lift[period]
        text = f"{period}-day LTV: {'+' if lift > 0 else ''}{lift:.1f}%"
        if comparison.significant[period]:
            text += " (significant)"
        parts.append(text)

    if comparison.long_term_different:
        parts.append(
            "Note: Long-term impact differs from short-term. Consider waiting for more data."
        )
    if comparison.low_confidence:
        parts.append("Cohort is below the minimum size; treat results as low confidence.")
    return ". ".join(parts)


def ltv_trend(
    customers: Sequence[CustomerLTVData],
    control_id: str,
    variant_id: str,
    max_days: int = 90,
    interval: int = 7,
) -> List[LTVTrendPoint]:
    """interval 日ごとの LTV 推移（interval, 2*interval, ... max_days 以下）"""
    control_customers = [c for c in customers if c.variant_id == control_id]
    variant_customers = [c for c in customers if c.variant_id == variant_id]

    trend = []
    for day in range(interval, max_days + 1, interval):
        control_ltv = mean([c.revenue_within(day) for c in control_customers])
        variant_ltv = mean([c.revenue_within(day) for c in variant_customers])
        trend.append(
            LTVTrendPoint(
                day=day,
                control_ltv=control_ltv,
                variant_ltv=variant_ltv,
                lift=calculate_lift(control_ltv, variant_ltv),
            )
        )
    return trend


def available_ltv_periods(
    test_end_date: datetime,
    now: Optional[datetime] = None,
    periods: Iterable[int] = (30, 60, 90),
) -> List[int]:
    """テスト終了から十分な日数が経過した分析期間"""
    days_since_end = ((now or datetime.now()) - test_end_date).days
    return [p for p in periods if days_since_end >= p]


def build_customers(
    conversions: Iterable[Event],
    orders: Iterable[Order],
) -> List[CustomerLTVData]:
    """アトリビューション済みコンバージョンと注文から顧客データを組み立てる

    visitor_id を customer_id とみなし、最初のコンバージョン時刻を初回コンバージョン日時とする。
    """
    first: Dict[str, Event] = {}
    for event in conversions:
        if event.variant_id is None:
            continue
        current = first.get(event.visitor_id)
        if current is None or event.occurred_at < current.occurred_at:
            first[event.visitor_id] = event

    orders_by_customer: Dict[str, List[Order]] = {}
    for order in orders:
        orders_by_customer.setdefault(order.customer_id, []).append(order)

    return [
        CustomerLTVData(
            customer_id=visitor_id,
            variant_id=event.variant_id,
            first_conversion_date=event.occurred_at,
            orders=sorted(orders_by_customer.get(visitor_id, []), key=lambda o: o.order_date),
        )
        for visitor_id, event in first.items()
    ]


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _as_date(value: datetime) -> date:
    return value.date() if isinstance(value, datetime) else value
