# ノベルティ効果の検出
"""
初期のリフトが「新しさ」への反応による一時的なものかを判定する

日次リフト（(variant率 - control率) / control率 × 100）に指数減衰モデル
    lift(t) = a · exp(-b t) + c   （b >= 0、c は長期的に落ち着くリフト）
を scipy.optimize.curve_fit で当てはめる。

判定:
    減衰: (初日のリフト - 直近のリフト) / |初日のリフト| > decay_threshold
    当てはまり: R² > fit_threshold
    ノベルティ効果 = 減衰 かつ 当てはまりが良い
    安定: モデル上の漸近値までの残り距離 a·exp(-b t) が |a| × stability_threshold 以下
          （days_to_stabilize == 0）

日次リフトのうち平均から 3 標準偏差を超える値は平均で置き換えてから当てはめる。

使用例:
    result = detect_novelty_effect(daily, min_days=config.novelty_min_days)
    if result.detected and not result.is_stable:
        print(result.recommendation)
"""

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import optimize

from abtest_engine.statistics.core import mean


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyLift:
    """1日分のコントロール・比較群の集計"""
    day: date
    control_visitors: int
    control_conversions: int
    variant_visitors: int
    variant_conversions: int

    @property
    def lift(self) -> float:
        """相対リフト（%）。コントロール率が 0 の日は 0"""
        control_rate = (
            self.control_conversions / self.control_visitors if self.control_visitors > 0 else 0.0
        )
        variant_rate = (
            self.variant_conversions / self.variant_visitors if self.variant_visitors > 0 else 0.0
        )
        if control_rate <= 0:
            return 0.0
        return (variant_rate - control_rate) / control_rate * 100.0


@dataclass(frozen=True)
class FitStatistics:
    """当てはまりの指標"""
    r2: float
    rmse: float
    mape: float


@dataclass(frozen=True)
class NoveltyResult:
    """ノベルティ効果の判定結果"""
    detected: bool
    is_stable: bool
    decay_rate: float
    stabilized_lift: float
    current_lift: float
    initial_lift: float
    days_to_stabilize: Optional[int]
    """安定までの残り日数（減衰しないモデルでは None）"""
    message: str
    recommendation: str
    fit: FitStatistics

    @property
    def confidence_in_stability(self) -> float:
        return self.fit.r2

    def to_dict(self):
        return {
            "detected": self.detected,
            "is_stable": self.is_stable,
            "decay_rate": self.decay_rate,
            "stabilized_lift": self.stabilized_lift,
            "current_lift": self.current_lift,
            "initial_lift": self.initial_lift,
            "days_to_stabilize": self.days_to_stabilize,
            "message": self.message,
            "recommendation": self.recommendation,
            "fit": {"r2": self.fit.r2, "rmse": self.fit.rmse, "mape": self.fit.mape},
        }


@dataclass(frozen=True)
class LearningResult:
    """学習効果（時間とともにリフトが伸びる）の判定結果"""
    detected: bool
    growth_rate: float
    current_lift: float
    projected_lift: float
    message: str


def detect_novelty_effect(
    daily: Sequence[DailyLift],
    min_days: int = 7,
    decay_threshold: float = 0.2,
    fit_threshold: float = 0.6,
    stability_threshold: float = 0.05,
) -> NoveltyResult:
    """日次リフトの推移からノベルティ効果を判定

    Args:
        daily: 日付順の日次データ
        min_days: 判定に必要な最小日数

    Returns:
        NoveltyResult（日数不足なら detected=False と不足の旨のメッセージ）
    """
    if len(daily) < min_days:
        return NoveltyResult(
            detected=False,
            is_stable=False,
            decay_rate=0.0,
            stabilized_lift=0.0,
            current_lift=0.0,
            initial_lift=0.0,
            days_to_stabilize=None,
            message=f"Insufficient data ({len(daily)}/{min_days} days)",
            recommendation="Wait for more data before analyzing novelty effect.",
            fit=FitStatistics(r2=0.0, rmse=0.0, mape=0.0),
        )

    lifts = _filter_outliers(np.array([d.lift for d in daily], dtype=float))
    amplitude, decay_rate, asymptote = _fit_exponential_decay(lifts)
    t = np.arange(lifts.size)
    fit = _fit_statistics(lifts, amplitude * np.exp(-decay_rate * t) + asymptote)

    initial = float(lifts[0])
    current = float(lifts[-1])
    decay = (initial - current) / abs(initial) if initial != 0 else 0.0
    detected = decay > decay_threshold and fit.r2 > fit_threshold

    days_to_stabilize = _days_to_stabilize(decay_rate, lifts.size, stability_threshold)
    is_stable = days_to_stabilize == 0

    message, recommendation = _novelty_message(
        detected, is_stable, initial, current, asymptote, days_to_stabilize
    )
    logger.debug(
        f"ノベルティ判定: days={lifts.size}, initial={initial:.2f}, current={current:.2f}, "
        f"asymptote={asymptote:.2f}, decay_rate={decay_rate:.4f}, r2={fit.r2:.3f}, "
        f"detected={detected}"
    )

    return NoveltyResult(
        detected=detected,
        is_stable=is_stable,
        decay_rate=decay_rate,
        stabilized_lift=asymptote,
        current_lift=current,
        initial_lift=initial,
        days_to_stabilize=days_to_stabilize,
        message=message,
        recommendation=recommendation,
        fit=fit,
    )


def detect_learning_effect(
    daily: Sequence[DailyLift],
    min_days: int = 7,
    growth_threshold: float = 0.2,
) -> LearningResult:
    """前半と後半の平均リフトを比べ、リフトが伸びているかを判定

    growth = (後半平均 - 前半平均) / |前半平均| が growth_threshold を超えたら検出。
    予測リフトは 直近のリフト + (後半平均 - 前半平均)。
    """
    if len(daily) < min_days:
        return LearningResult(
            detected=False,
            growth_rate=0.0,
            current_lift=0.0,
            projected_lift=0.0,
            message=f"Insufficient data ({len(daily)}/{min_days} days)",
        )

    lifts = [d.lift for d in daily]
    half = len(lifts) // 2
    first = mean(lifts[:half])
    second = mean(lifts[half:])
    current = lifts[-1]
    growth = (second - first) / abs(first) if first != 0 else 0.0
    detected = growth > growth_threshold and second > first

    return LearningResult(
        detected=detected,
        growth_rate=growth,
        current_lift=current,
        projected_lift=current + (second - first),
        message=(
            f"Learning effect detected. Lift improving from {first:.1f}% to {second:.1f}%. "
            f"May continue to grow."
            if detected else "No significant learning effect detected."
        ),
    )


def _filter_outliers(lifts: np.ndarray) -> np.ndarray:
    center = lifts.mean()
    spread = lifts.std(ddof=1) if lifts.size > 1 else 0.0
    if spread == 0:
        return lifts
    return np.where(np.abs(lifts - center) > 3 * spread, center, lifts)


def _decay(t: np.ndarray, a: float, b: float, c: float) -> np.ndarray:
    return a * np.exp(-b * t) + c


def _fit_exponential_decay(lifts: np.ndarray) -> Tuple[float, float, float]:
    """(a, b, c) を返す。収束しなければ初期推定値を使う"""
    n = lifts.size
    if n < 3:
        return 0.0, 0.0, float(lifts.mean()) if n else 0.0
    quarter = int(math.ceil(n / 4))
    start = float(lifts[:quarter].mean())
    end = float(lifts[-quarter:].mean())

    # 初期推定: 漸近値は後ろ 1/4 の平均、減衰率は中間値に最も近づく日の半減期から
    halfway = (start + end) / 2
    halfway_day = int(np.argmin(np.abs(lifts[1:] - halfway))) + 1
    initial = (start - end, math.log(2) / halfway_day, end)

    t = np.arange(n, dtype=float)
    try:
        params, _ = optimize.curve_fit(
            _decay,
            t,
            lifts,
            p0=initial,
            bounds=([-np.inf, 0.0, -np.inf], [np.inf, np.inf, np.inf]),
            maxfev=5000,
        )
    except RuntimeError as e:
        logger.debug(f"指数減衰モデルが収束しないため初期推定値を使用: error={e}")
        return initial
    return float(params[0]), float(params[1]), float(params[2])


def _fit_statistics(actual: np.ndarray, predicted: np.ndarray) -> FitStatistics:
    residuals = actual - predicted
    ss_res = float(np.sum(residuals ** 2))
    ss_tot = float(np.sum((actual - actual.mean()) ** 2))
    r2 = max(0.0, 1 - ss_res / ss_tot) if ss_tot > 0 else 0.0

    nonzero = np.abs(actual) > 0.001
    mape = (
        float(np.mean(np.abs(residuals[nonzero] / actual[nonzero]))) * 100.0
        if nonzero.any() else 0.0
    )
    return FitStatistics(r2=r2, rmse=float(np.sqrt(np.mean(residuals ** 2))), mape=mape)


def _days_to_stabilize(decay_rate: float, elapsed_days: int, threshold: float) -> Optional[int]:
    """a·exp(-b t) が |a| × threshold まで縮む日からの残り日数"""
    if decay_rate <= 0:
        return None
    target_day = int(math.ceil(math.log(1 / threshold) / decay_rate))
    return max(0, target_day - elapsed_days)


def _novelty_message(
    detected: bool,
    is_stable: bool,
    initial: float,
    current: float,
    asymptote: float,
    days_to_stabilize: Optional[int],
) -> Tuple[str, str]:
    if not detected:
        if is_stable:
            return (
                f"Lift appears stable at {current:.1f}%. No significant novelty effect detected.",
                "Results can be trusted. Consider concluding the test if statistical "
                "significance is reached.",
            )
        return (
            f"Lift pattern does not match novelty decay. Current lift: {current:.1f}%.",
            "Continue monitoring. Lift may stabilize or follow a non-standard pattern.",
        )

    decay_percent = (initial - asymptote) / initial * 100.0 if initial != 0 else 0.0
    if is_stable:
        return (
            f"Novelty effect has worn off. Initial lift of {initial:.1f}% has settled "
            f"near {asymptote:.1f}% ({decay_percent:.0f}% decay).",
            f"Base decisions on the stabilized lift ({asymptote:.1f}%), not the initial lift.",
        )

    remaining = ""
    if days_to_stabilize:
        remaining = f" Estimated {days_to_stabilize} more days until stabilization."
    return (
        f"Novelty effect detected. Initial lift of {initial:.1f}% is decaying toward "
        f"{asymptote:.1f}% ({decay_percent:.0f}% decay).{remaining}",
        f"Wait for lift to stabilize (projected: {asymptote:.1f}%) before making decisions. "
        f"Do not ship based on initial high lift.",
    )
