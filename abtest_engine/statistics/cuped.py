# CUPED 分散削減
"""
実験前の行動を共変量にして指標の分散を減らす（CUPED）

    Y_adjusted = Y - θ (X - E[X])、θ = Cov(X, Y) / Var(X)

X は同じ訪問者の実験前の値（過去の購入額・セッション数など）。
|相関| が min_correlation 未満、または Var(X) = 0 の場合は補正しない（applied=False）。
分散削減率は (Var(Y) - Var(Y_adjusted)) / Var(Y) × 100（負なら 0）。

使用例:
    adjusted, result = calculate_adjusted_values(revenue_by_visitor, pre_revenue_by_visitor)
    if result.applied:
        logger.info(f"分散削減: {result.variance_reduction:.1f}%")
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from abtest_engine.statistics.core import correlation, covariance, mean, variance


logger = logging.getLogger(__name__)

DEFAULT_COVARIATE = "pre_experiment_metric"


@dataclass(frozen=True)
class CupedResult:
    """CUPED 補正の結果"""
    adjusted_mean: float
    variance_reduction: float
    """分散の削減率（%）"""
    covariate: str
    covariate_correlation: float
    original_variance: float
    adjusted_variance: float
    theta: float
    applied: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "adjusted_mean": self.adjusted_mean,
            "variance_reduction": self.variance_reduction,
            "covariate": self.covariate,
            "covariate_correlation": self.covariate_correlation,
            "original_variance": self.original_variance,
            "adjusted_variance": self.adjusted_variance,
            "theta": self.theta,
            "applied": self.applied,
        }


@dataclass(frozen=True)
class CupedComparison:
    """2群比較への CUPED 適用結果"""
    adjusted_difference: float
    original_difference: float
    control: CupedResult
    variant: CupedResult
    combined_variance_reduction: float
    """標本サイズで重み付けした分散削減率（%）"""


def apply_cuped(
    experiment: Sequence[float],
    pre_experiment: Sequence[float],
    min_correlation: float = 0.1,
    covariate: str = DEFAULT_COVARIATE,
) -> CupedResult:
    """1群の指標に CUPED を適用

    Args:
        experiment: 実験期間中の指標値
        pre_experiment: 同じ訪問者・同じ順序の実験前の値

    Raises:
        ValueError: 2つの配列の長さが異なる場合
    """
    if len(experiment) != len(pre_experiment):
        raise ValueError(
            f"Experiment and pre-experiment arrays must have same length: "
            f"{len(experiment)} != {len(pre_experiment)}"
        )

    y = np.asarray(experiment, dtype=float)
    x = np.asarray(pre_experiment, dtype=float)
    original_variance = variance(y)

    if y.size < 3:
        return _not_applied(y, covariate, 0.0, original_variance)

    corr = correlation(x, y)
    var_x = variance(x)
    if abs(corr) < min_correlation or var_x == 0:
        return _not_applied(y, covariate, corr, original_variance)

    theta = covariance(x, y) / var_x
    adjusted = y - theta * (x - x.mean())
    adjusted_variance = variance(adjusted)
    reduction = (
        (original_variance - adjusted_variance) / original_variance * 100.0
        if original_variance > 0 else 0.0
    )

    return CupedResult(
        adjusted_mean=float(adjusted.mean()),
        variance_reduction=max(0.0, reduction),
        covariate=covariate,
        covariate_correlation=corr,
        original_variance=original_variance,
        adjusted_variance=adjusted_variance,
        theta=theta,
        applied=True,
    )


def compare_with_cuped(
    control_experiment: Sequence[float],
    control_pre_experiment: Sequence[float],
    variant_experiment: Sequence[float],
    variant_pre_experiment: Sequence[float],
    min_correlation: float = 0.1,
    covariate: str = DEFAULT_COVARIATE,
) -> CupedComparison:
    """コントロールと比較群にそれぞれ CUPED を適用して差を求める"""
    control = apply_cuped(control_experiment, control_pre_experiment, min_correlation, covariate)
    variant = apply_cuped(variant_experiment, variant_pre_experiment, min_correlation, covariate)

    total = len(control_experiment) + len(variant_experiment)
    combined = (
        (control.variance_reduction * len(control_experiment)
         + variant.variance_reduction * len(variant_experiment)) / total
        if total > 0 else 0.0
    )

    return CupedComparison(
        adjusted_difference=variant.adjusted_mean - control.adjusted_mean,
        original_difference=mean(variant_experiment) - mean(control_experiment),
        control=control,
        variant=variant,
        combined_variance_reduction=combined,
    )


def calculate_adjusted_values(
    experiment: Mapping[str, float],
    pre_experiment: Mapping[str, float],
    min_correlation: float = 0.1,
    covariate: str = DEFAULT_COVARIATE,
) -> Tuple[Dict[str, float], CupedResult]:
    """訪問者ごとの補正済みの値

    両方のマップに存在する訪問者だけを対象にする。補正を適用しない場合は元の値を返す。

    Returns:
        (visitor_id -> 補正済みの値, CupedResult)
    """
    visitors = [visitor_id for visitor_id in experiment if visitor_id in pre_experiment]
    if not visitors:
        return {}, CupedResult(
            adjusted_mean=0.0,
            variance_reduction=0.0,
            covariate=covariate,
            covariate_correlation=0.0,
            original_variance=0.0,
            adjusted_variance=0.0,
            theta=0.0,
            applied=False,
        )

    y = np.array([experiment[v] for v in visitors], dtype=float)
    x = np.array([pre_experiment[v] for v in visitors], dtype=float)
    result = apply_cuped(y, x, min_correlation, covariate)

    if result.applied:
        y = y - result.theta * (x - x.mean())
        logger.debug(
            f"CUPED補正: covariate={covariate}, visitors={len(visitors)}, "
            f"theta={result.theta:.4f}, reduction={result.variance_reduction:.1f}%"
        )
    return dict(zip(visitors, y.tolist())), result


def select_best_covariate(
    experiment: Sequence[float],
    covariates: Mapping[str, Sequence[float]],
) -> Optional[Tuple[str, float]]:
    """|相関| が最大の共変量を選ぶ

    長さが合わない共変量は無視する。

    Returns:
        (共変量名, |相関|)。相関を持つ共変量が無い場合は None
    """
    best: Optional[Tuple[str, float]] = None
    for name, values in covariates.items():
        if len(values) != len(experiment):
            continue
        corr = abs(correlation(values, experiment))
        if corr > 0 and (best is None or corr > best[1]):
            best = (name, corr)
    return best


def estimate_variance_reduction(history: Sequence[float], lag_days: int = 14) -> float:
    """過去の日次系列から CUPED の分散削減率（%）を見積もる

    lag_days だけずらした系列同士の相関 r から r² × 100 とする。
    系列が lag_days 以下の長さなら 0。
    """
    if len(history) <= lag_days:
        return 0.0
    values = list(history)
    pre = values[:-lag_days]
    post = values[lag_days:]
    return correlation(pre, post) ** 2 * 100.0


def _not_applied(
    y: np.ndarray,
    covariate: str,
    corr: float,
    original_variance: float,
) -> CupedResult:
    return CupedResult(
        adjusted_mean=float(y.mean()) if y.size else 0.0,
        variance_reduction=0.0,
        covariate=covariate,
        covariate_correlation=corr,
        original_variance=original_variance,
        adjusted_variance=original_variance,
        theta=0.0,
        applied=False,
    )
