# ブートストラップ推定
"""
ノンパラメトリック・ブートストラップによる信頼区間と差の検定

アルゴリズム（パーセンタイル法）:
    1. 入力と同じサイズの復元抽出を num_samples 回行い、各リサンプルの統計量を計算
    2. 統計量をソートし、alpha = 1 - confidence_level として
       lower = stats[floor(B * alpha/2)], upper = stats[floor(B * (1 - alpha/2))]
       （インデックスは [0, B-1] に丸める）
    3. 点推定は元の標本の統計量、標準誤差はリサンプル統計量の標準偏差（母標準偏差）

bootstrap_confidence_interval は method で区間の作り方を切り替えられる:
    "percentile": 上記のパーセンタイル法（既定）
    "basic": ピボット法。lower = 2θ - stats[floor(B * (1 - alpha/2))],
             upper = 2θ - stats[floor(B * alpha/2)]
    "bca": バイアス補正・加速法。z0 = Φ⁻¹(#{stats < θ} / B)、
           加速係数 a はジャックナイフ値 θ_(i) から
           a = Σ(θ̄ - θ_(i))³ / (6 * (Σ(θ̄ - θ_(i))²)^1.5)。
           補正後の分位点 Φ(z0 + (z0 + z) / (1 - a(z0 + z))) で区間を取る

有意性:
    差の区間が 0 を含まなければ有意。
    approximate_p_value は z = |estimate| / SE を正規CDF近似に通した近似値であり、
    厳密な p値ではない（PValueKind.APPROXIMATE_NORMAL）。厳密さが必要な場合は
    permutation_test を使う。

標本不足（空・1要素）は例外にせず、ゼロ幅の区間を返す。

並列化:
    リサンプルは常に parallel_chunk_size ごとのチャンクに分けて生成する。
    各チャンクの乱数は SeedSequence.spawn で派生させるので、同じ seed なら
    逐次・並列どちらでも同じ結果になる。num_samples × 標本サイズが
    parallel_threshold 以上のときはチャンクを ThreadPoolExecutor で並列に処理する
    （numpy の演算中は GIL が解放される）。

リクエスト処理経路では呼び出さず、バッチ・オフライン分析から使用する。
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
from scipy import stats as scipy_stats

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.statistics.core import PValue, PValueKind, two_tailed_p_from_z


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BootstrapResult:
    """ブートストラップ推定結果"""
    estimate: float
    standard_error: float
    lower_bound: float
    upper_bound: float
    confidence_level: float
    sample_size: int
    """推定に使った観測数（2標本の場合は合計）"""
    num_resamples: int
    """使用したリサンプル数（標本不足の場合は 0）"""

    @property
    def width(self) -> float:
        return self.upper_bound - self.lower_bound

    @property
    def is_degenerate(self) -> bool:
        """リサンプリングを行わなかった（標本不足）結果か"""
        return self.num_resamples == 0

    def to_dict(self) -> Dict[str, float]:
        return {
            "estimate": self.estimate,
            "standard_error": self.standard_error,
            "lower_bound": self.lower_bound,
            "upper_bound": self.upper_bound,
            "confidence_level": self.confidence_level,
            "sample_size": self.sample_size,
            "num_resamples": self.num_resamples,
        }


# 統計量: (リサンプル数, 標本サイズ) の行列 → リサンプルごとの値
_STATISTICS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "mean": lambda m: m.mean(axis=1),
    "median": lambda m: np.median(m, axis=1),
    "sum": lambda m: m.sum(axis=1),
}

_METHODS = ("percentile", "basic", "bca")


def bootstrap_confidence_interval(
    samples: Sequence[float],
    confidence_level: float = 0.95,
    num_samples: int = 5000,
    seed: Optional[int] = None,
    statistic: str = "mean",
    config: Optional[EngineConfig] = None,
    method: str = "percentile",
) -> BootstrapResult:
    """1標本の統計量の信頼区間

    Args:
        samples: 観測値
        confidence_level: 信頼水準（既定 0.95）
        num_samples: リサンプル数（既定 5000）
        seed: 乱数シード（再現性確保用）
        statistic: "mean" / "median" / "sum"
        config: 並列化の設定
        method: "percentile" / "basic" / "bca"

    Returns:
        BootstrapResult（空なら 0 のゼロ幅、1要素ならその値のゼロ幅）

    Raises:
        ValueError: statistic または method が未知の場合
    """
    stat_fn = _statistic(statistic)
    if method not in _METHODS:
        raise ValueError(f"Unknown method: {method!r} (expected one of {list(_METHODS)})")
    data = np.asarray(samples, dtype=float)
    n = data.size

    if n == 0:
        return _degenerate(0.0, confidence_level, 0)
    if n == 1:
        return _degenerate(float(data[0]), confidence_level, 1)

    estimate = float(stat_fn(data.reshape(1, -1))[0])

    def draw(rng: np.random.Generator, size: int) -> np.ndarray:
        indices = rng.integers(0, n, size=(size, n))
        return stat_fn(data[indices])

    stats = _run_chunks(draw, num_samples, seed, n, config)
    result = _percentile_result(estimate, stats, confidence_level, n)
    if method == "basic":
        return _basic_result(result)
    if method == "bca":
        return _bca_result(result, stats, _jackknife(data, statistic, stat_fn))
    return result


def bootstrap_conversion_rate(
    control_conversions: int,
    control_visitors: int,
    variant_conversions: int,
    variant_visitors: int,
    confidence_level: float = 0.95,
    num_samples: int = 5000,
    seed: Optional[int] = None,
    config: Optional[EngineConfig] = None,
) -> BootstrapResult:
    """コンバージョン率の差（ポイント）のパラメトリック・ブートストラップ

    各群の観測率で二項分布からコンバージョン数を引き直し、
    (variant率 - control率) × 100 の分布からパーセンタイル区間を取る。

    Returns:
        BootstrapResult（どちらかの訪問者数が 0 以下ならゼロ結果）
    """
    if control_visitors <= 0 or variant_visitors <= 0:
        return _degenerate(0.0, confidence_level, 0)

    control_rate = control_conversions / control_visitors
    variant_rate = variant_conversions / variant_visitors
    estimate = (variant_rate - control_rate) * 100.0

    def draw(rng: np.random.Generator, size: int) -> np.ndarray:
        control = rng.binomial(control_visitors, control_rate, size=size) / control_visitors
        variant = rng.binomial(variant_visitors, variant_rate, size=size) / variant_visitors
        return (variant - control) * 100.0

    total = control_visitors + variant_visitors
    diffs = _run_chunks(draw, num_samples, seed, total, config)
    return _percentile_result(estimate, diffs, confidence_level, total)


def bootstrap_difference(
    samples_a: Sequence[float],
    samples_b: Sequence[float],
    confidence_level: float = 0.95,
    num_samples: int = 5000,
    seed: Optional[int] = None,
    config: Optional[EngineConfig] = None,
) -> BootstrapResult:
    """2標本の平均の差（mean(b) - mean(a)）の信頼区間

    Args:
        samples_a: コントロール群の観測値
        samples_b: 比較群の観測値

    Returns:
        BootstrapResult（どちらかが空ならゼロ結果）
    """
    a = np.asarray(samples_a, dtype=float)
    b = np.asarray(samples_b, dtype=float)
    if a.size == 0 or b.size == 0:
        return _degenerate(0.0, confidence_level, a.size + b.size)

    estimate = float(b.mean() - a.mean())

    def draw(rng: np.random.Generator, size: int) -> np.ndarray:
        a_means = a[rng.integers(0, a.size, size=(size, a.size))].mean(axis=1)
        b_means = b[rng.integers(0, b.size, size=(size, b.size))].mean(axis=1)
        return b_means - a_means

    stats = _run_chunks(draw, num_samples, seed, a.size + b.size, config)
    return _percentile_result(estimate, stats, confidence_level, a.size + b.size)


def bootstrap_ratio(
    samples_a: Sequence[float],
    samples_b: Sequence[float],
    confidence_level: float = 0.95,
    num_samples: int = 5000,
    seed: Optional[int] = None,
    config: Optional[EngineConfig] = None,
) -> BootstrapResult:
    """相対リフト（(mean(b) / mean(a) - 1) × 100 %）の信頼区間

    コントロール平均が 0 以下になったリサンプルは捨てる。
    すべて捨てた場合は区間 [0, 0]、num_resamples=0 を返す。
    """
    a = np.asarray(samples_a, dtype=float)
    b = np.asarray(samples_b, dtype=float)
    if a.size == 0 or b.size == 0:
        return _degenerate(0.0, confidence_level, a.size + b.size)

    control_mean = float(a.mean())
    estimate = (float(b.mean()) / control_mean - 1.0) * 100.0 if control_mean > 0 else 0.0

    def draw(rng: np.random.Generator, size: int) -> np.ndarray:
        a_means = a[rng.integers(0, a.size, size=(size, a.size))].mean(axis=1)
        b_means = b[rng.integers(0, b.size, size=(size, b.size))].mean(axis=1)
        valid = a_means > 0
        return (b_means[valid] / a_means[valid] - 1.0) * 100.0

    ratios = _run_chunks(draw, num_samples, seed, a.size + b.size, config)
    if ratios.size == 0:
        return BootstrapResult(
            estimate=estimate,
            standard_error=0.0,
            lower_bound=0.0,
            upper_bound=0.0,
            confidence_level=confidence_level,
            sample_size=a.size + b.size,
            num_resamples=0,
        )
    return _percentile_result(estimate, ratios, confidence_level, a.size + b.size)


def is_significant(result: BootstrapResult) -> bool:
    """差の信頼区間が 0 を含まないか"""
    return result.lower_bound > 0 or result.upper_bound < 0


def approximate_p_value(result: BootstrapResult) -> PValue:
    """ブートストラップ結果から両側 p値を近似

    z = |estimate| / standard_error を Abramowitz & Stegun の正規CDF近似に通す。
    標準誤差が 0 の場合は比較不能として、estimate が 0 なら 1.0、それ以外は 0.0。
    """
    if result.standard_error == 0:
        value = 1.0 if result.estimate == 0 else 0.0
        return PValue(value=value, kind=PValueKind.APPROXIMATE_NORMAL)

    z = abs(result.estimate) / result.standard_error
    return PValue(value=two_tailed_p_from_z(z), kind=PValueKind.APPROXIMATE_NORMAL)


def permutation_test(
    samples_a: Sequence[float],
    samples_b: Sequence[float],
    num_permutations: int = 5000,
    seed: Optional[int] = None,
    config: Optional[EngineConfig] = None,
) -> PValue:
    """平均の差に対する両側並べ替え検定

    p = (|並べ替え後の差| >= |観測された差| の回数 + 1) / (num_permutations + 1)

    Returns:
        PValue（kind = PERMUTATION）。どちらかが空なら 1.0
    """
    a = np.asarray(samples_a, dtype=float)
    b = np.asarray(samples_b, dtype=float)
    if a.size == 0 or b.size == 0:
        return PValue(value=1.0, kind=PValueKind.PERMUTATION)

    pooled = np.concatenate([a, b])
    observed = abs(float(b.mean() - a.mean()))
    # 浮動小数点の誤差で等しい差を取りこぼさない
    tolerance = 1e-12 * max(1.0, observed)

    def draw(rng: np.random.Generator, size: int) -> np.ndarray:
        shuffled = rng.permuted(np.tile(pooled, (size, 1)), axis=1)
        diffs = shuffled[:, a.size:].mean(axis=1) - shuffled[:, :a.size].mean(axis=1)
        return np.abs(diffs)

    diffs = _run_chunks(draw, num_permutations, seed, pooled.size, config)
    extreme = int(np.count_nonzero(diffs >= observed - tolerance))
    return PValue(
        value=(extreme + 1) / (diffs.size + 1),
        kind=PValueKind.PERMUTATION,
    )


# ============================================================================
# 内部処理
# ============================================================================


def _statistic(name: str) -> Callable[[np.ndarray], np.ndarray]:
    try:
        return _STATISTICS[name]
    except KeyError:
        raise ValueError(
            f"Unknown statistic: {name!r} (expected one of {sorted(_STATISTICS)})"
        )


def _degenerate(value: float, confidence_level: float, sample_size: int) -> BootstrapResult:
    return BootstrapResult(
        estimate=value,
        standard_error=0.0,
        lower_bound=value,
        upper_bound=value,
        confidence_level=confidence_level,
        sample_size=sample_size,
        num_resamples=0,
    )


def _percentile_result(
    estimate: float,
    stats: np.ndarray,
    confidence_level: float,
    sample_size: int,
) -> BootstrapResult:
    ordered = np.sort(stats)
    count = ordered.size
    alpha = 1.0 - confidence_level
    lower_idx = min(max(int(math.floor(count * (alpha / 2))), 0), count - 1)
    upper_idx = min(max(int(math.floor(count * (1 - alpha / 2))), 0), count - 1)

    return BootstrapResult(
        estimate=estimate,
        standard_error=float(np.std(ordered)),
        lower_bound=float(ordered[lower_idx]),
        upper_bound=float(ordered[upper_idx]),
        confidence_level=confidence_level,
        sample_size=sample_size,
        num_resamples=count,
    )


def _basic_result(result: BootstrapResult) -> BootstrapResult:
    """パーセンタイル区間をピボット法の区間に置き換える"""
    return replace(
        result,
        lower_bound=2 * result.estimate - result.upper_bound,
        upper_bound=2 * result.estimate - result.lower_bound,
    )


def _bca_result(
    result: BootstrapResult,
    stats: np.ndarray,
    jackknife: np.ndarray,
) -> BootstrapResult:
    ordered = np.sort(stats)
    count = ordered.size

    # 全リサンプルが片側に寄ると Φ⁻¹ が発散するので端を切る
    proportion = np.count_nonzero(ordered < result.estimate) / count
    proportion = min(max(proportion, 0.5 / count), 1 - 0.5 / count)
    z0 = float(scipy_stats.norm.ppf(proportion))

    diffs = jackknife.mean() - jackknife
    denominator = float(np.sum(diffs ** 2))
    acceleration = float(np.sum(diffs ** 3)) / (6 * denominator ** 1.5) if denominator > 0 else 0.0

    alpha = 1.0 - result.confidence_level
    bounds = []
    for z in (scipy_stats.norm.ppf(alpha / 2), scipy_stats.norm.ppf(1 - alpha / 2)):
        adjusted = scipy_stats.norm.cdf(z0 + (z0 + z) / (1 - acceleration * (z0 + z)))
        index = min(max(int(math.floor(count * adjusted)), 0), count - 1)
        bounds.append(float(ordered[index]))

    logger.debug(f"BCa補正: z0={z0:.4f}, acceleration={acceleration:.4f}")
    return replace(result, lower_bound=bounds[0], upper_bound=bounds[1])


def _jackknife(
    data: np.ndarray,
    statistic: str,
    stat_fn: Callable[[np.ndarray], np.ndarray],
) -> np.ndarray:
    """1点ずつ除いた標本の統計量（中央値は n × (n-1) の行列を作る）"""
    n = data.size
    total = data.sum()
    if statistic == "mean":
        return (total - data) / (n - 1)
    if statistic == "sum":
        return total - data
    keep = ~np.eye(n, dtype=bool)
    return stat_fn(np.broadcast_to(data, (n, n))[keep].reshape(n, n - 1))


def _run_chunks(
    draw: Callable[[np.random.Generator, int], np.ndarray],
    num_samples: int,
    seed: Optional[int],
    sample_size: int,
    config: Optional[EngineConfig],
) -> np.ndarray:
    """リサンプルをチャンクに分けて生成し、結果を連結"""
    if num_samples <= 0:
        raise ValueError(f"num_samples must be positive: {num_samples}")

    config = config or EngineConfig()
    if seed is None:
        seed = config.bootstrap_seed

    chunk_size = max(1, config.parallel_chunk_size)
    sizes: List[int] = [chunk_size] * (num_samples // chunk_size)
    if num_samples % chunk_size:
        sizes.append(num_samples % chunk_size)

    children = np.random.SeedSequence(seed).spawn(len(sizes))

    def run(index: int) -> np.ndarray:
        return draw(np.random.default_rng(children[index]), sizes[index])

    parallel = (
        len(sizes) > 1
        and config.max_workers > 1
        and num_samples * sample_size >= config.parallel_threshold
    )
    if parallel:
        logger.debug(
            f"ブートストラップを並列実行: resamples={num_samples}, "
            f"sample_size={sample_size}, chunks={len(sizes)}, workers={config.max_workers}"
        )
        with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
            results = list(executor.map(run, range(len(sizes))))
    else:
        results = [run(i) for i in range(len(sizes))]

    return np.concatenate(results)
