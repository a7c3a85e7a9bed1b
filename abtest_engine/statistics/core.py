# 統計の基本関数
"""
記述統計・正規分布CDFの近似・p値の型・サンプルサイズと検出力

p値は精度の種類を型で区別する:
    PValueKind.APPROXIMATE_NORMAL: z = |estimate| / SE から正規CDF近似で求めた値。
        ブートストラップ結果に対する近似であり、厳密な p値ではない。
    PValueKind.PERMUTATION: 並べ替え検定による p値（モンテカルロ推定）
    PValueKind.CHI_SQUARED: scipy.stats によるカイ二乗適合度検定の p値
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np
from scipy import stats


class PValueKind(str, Enum):
    """p値の算出方法（精度の種類）"""
    APPROXIMATE_NORMAL = "approximate_normal"
    PERMUTATION = "permutation"
    CHI_SQUARED = "chi_squared"


@dataclass(frozen=True)
class PValue:
    """算出方法付きの p値

    使用例:
        p = approximate_p_value(result)
        if p.kind == PValueKind.APPROXIMATE_NORMAL:
            label = f"p≈{p.value:.3f}"
    """
    value: float
    kind: PValueKind

    @property
    def is_approximate(self) -> bool:
        return self.kind == PValueKind.APPROXIMATE_NORMAL

    def is_below(self, alpha: float) -> bool:
        return self.value < alpha

    def to_dict(self):
        return {"value": self.value, "kind": self.kind.value}


def mean(values: Sequence[float]) -> float:
    """平均（空の場合は 0.0）"""
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def variance(values: Sequence[float], sample: bool = True) -> float:
    """分散

    Args:
        sample: True なら不偏分散（n-1）、False なら母分散（n）
    """
    n = len(values)
    if n == 0 or (sample and n < 2):
        return 0.0
    return float(np.var(values, ddof=1 if sample else 0))


def std(values: Sequence[float], sample: bool = True) -> float:
    """標準偏差"""
    return math.sqrt(variance(values, sample))


def normal_cdf_approx(x: float) -> float:
    """標準正規分布の累積分布関数（Abramowitz & Stegun 26.2.17 の多項式近似）

    絶対誤差はおよそ 7.5e-8。
    """
    t = 1.0 / (1.0 + 0.2316419 * abs(x))
    d = 0.3989423 * math.exp(-x * x / 2.0)
    p = d * t * (
        0.3193815
        + t * (-0.3565638 + t * (1.781478 + t * (-1.821256 + t * 1.330274)))
    )
    return 1.0 - p if x > 0 else p


def two_tailed_p_from_z(z: float) -> float:
    """z スコアから両側 p値を近似（2 * (1 - Φ(|z|))）"""
    p = 2.0 * (1.0 - normal_cdf_approx(abs(z)))
    return min(max(p, 0.0), 1.0)


def covariance(x: Sequence[float], y: Sequence[float]) -> float:
    """不偏共分散（長さが異なる・2要素未満の場合は 0.0）"""
    if len(x) != len(y) or len(x) < 2:
        return 0.0
    return float(np.cov(np.asarray(x, dtype=float), np.asarray(y, dtype=float), ddof=1)[0, 1])


def correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """ピアソン相関係数（どちらかの分散が 0 の場合は 0.0）"""
    sx = std(x)
    sy = std(y)
    if sx == 0 or sy == 0:
        return 0.0
    return covariance(x, y) / (sx * sy)


def calculate_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    power: float = 0.8,
    alpha: float = 0.05,
) -> int:
    """コンバージョン率の両側検定に必要な1群あたりの訪問者数

    p2 = baseline_rate × (1 + minimum_detectable_effect) として
    n = (z_{1-α/2} √(2p̄(1-p̄)) + z_{power} √(p1(1-p1) + p2(1-p2)))² / (p2 - p1)²

    Raises:
        ValueError: baseline_rate が (0, 1) の外、効果量が正でない、p2 が 1 以上の場合
    """
    if not (0.0 < baseline_rate < 1.0):
        raise ValueError(f"Baseline rate must be between 0 and 1: {baseline_rate}")
    if minimum_detectable_effect <= 0:
        raise ValueError(f"Minimum detectable effect must be positive: {minimum_detectable_effect}")

    p1 = baseline_rate
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    if p2 >= 1.0:
        raise ValueError(f"Target rate exceeds 100%: {p2}")

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_beta = stats.norm.ppf(power)
    pooled = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * pooled * (1 - pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return int(math.ceil(numerator / (p2 - p1) ** 2))


def calculate_power(
    sample_size: int,
    baseline_rate: float,
    minimum_detectable_effect: float,
    alpha: float = 0.05,
) -> float:
    """1群あたり sample_size 人のときの検出力"""
    if sample_size <= 0:
        return 0.0
    p1 = baseline_rate
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    pooled = (p1 + p2) / 2

    se_null = math.sqrt(2 * pooled * (1 - pooled) / sample_size)
    se_diff = math.sqrt((p1 * (1 - p1) + p2 * (1 - p2)) / sample_size)
    if se_diff == 0:
        return 0.0

    threshold = stats.norm.ppf(1 - alpha / 2) * se_null
    return float(stats.norm.cdf((abs(p2 - p1) - threshold) / se_diff))
