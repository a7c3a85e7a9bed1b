# 多重比較補正
"""
複数バリアントをコントロールと比較するときの多重比較補正

- Bonferroni: 全比較を alpha / m と比較する
- Holm-Bonferroni（ステップダウン法）: p値を昇順に並べ、i 番目（1始まり）を
  alpha / (m - i + 1) と比較し、最初に有意でなかった比較以降はすべて有意でないとする。
  調整済み p値は max_{j<=i} min(1, (m - j + 1) p_(j))（単調非減少、1 で頭打ち）
- Benjamini-Hochberg: p_(k) <= k / m * alpha を満たす最大の k までを有意とする
  （false discovery rate の制御）。調整済み p値は min_{j>=i} min(1, m / j * p_(j))

調整済み p値と判定は statsmodels の multipletests で求め、しきい値ちょうどの p値は有意とする。
どの方法でも結果の比較は入力順に並ぶ。

使用例:
    method = recommend_correction_method("exploratory", len(p_values))
    result = apply_correction(p_values, method, alpha=0.05)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence, Tuple

from statsmodels.stats.multitest import multipletests


class CorrectionMethod(str, Enum):
    """補正方法"""
    NONE = "none"
    BONFERRONI = "bonferroni"
    HOLM = "holm"
    BENJAMINI_HOCHBERG = "bh"


@dataclass(frozen=True)
class CorrectedComparison:
    """補正後の個別比較"""
    comparison: str
    p_value: float
    adjusted_p_value: float
    adjusted_alpha: float
    """この順位の比較に適用した有意水準"""
    is_significant: bool
    rank: int
    """p値の昇順での順位（1 が最小）"""


@dataclass
class CorrectionResult:
    """補正の結果（比較は入力順）"""
    method: CorrectionMethod = CorrectionMethod.HOLM
    comparisons: List[CorrectedComparison] = field(default_factory=list)
    alpha: float = 0.05
    message: str = ""

    @property
    def significant_count(self) -> int:
        return sum(1 for c in self.comparisons if c.is_significant)

    @property
    def has_significant_result(self) -> bool:
        return self.significant_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "alpha": self.alpha,
            "significant_count": self.significant_count,
            "message": self.message,
            "comparisons": [
                {
                    "comparison": c.comparison,
                    "p_value": c.p_value,
                    "adjusted_p_value": c.adjusted_p_value,
                    "adjusted_alpha": c.adjusted_alpha,
                    "is_significant": c.is_significant,
                    "rank": c.rank,
                }
                for c in self.comparisons
            ],
        }


_METHOD_LABELS = {
    CorrectionMethod.NONE: "comparison without correction",
    CorrectionMethod.BONFERRONI: "Bonferroni correction",
    CorrectionMethod.HOLM: "Holm-Bonferroni correction",
    CorrectionMethod.BENJAMINI_HOCHBERG: "Benjamini-Hochberg correction",
}

_STATSMODELS_METHODS = {
    CorrectionMethod.BONFERRONI: "bonferroni",
    CorrectionMethod.HOLM: "holm",
    CorrectionMethod.BENJAMINI_HOCHBERG: "fdr_bh",
}


def holm_bonferroni(p_values: Sequence[Tuple[str, float]], alpha: float = 0.05) -> CorrectionResult:
    """Holm-Bonferroni 補正

    Args:
        p_values: (比較名, p値) のリスト（例: ("control_vs_variant_a", 0.012)）
        alpha: family-wise 有意水準

    Returns:
        CorrectionResult
    """
    m = len(p_values)
    return _corrected(
        CorrectionMethod.HOLM, p_values, alpha, lambda rank: alpha / (m - rank + 1)
    )


def bonferroni(p_values: Sequence[Tuple[str, float]], alpha: float = 0.05) -> CorrectionResult:
    """Bonferroni 補正（全比較を alpha / m で判定）"""
    m = len(p_values)
    return _corrected(CorrectionMethod.BONFERRONI, p_values, alpha, lambda rank: alpha / m)


def benjamini_hochberg(
    p_values: Sequence[Tuple[str, float]],
    alpha: float = 0.05,
) -> CorrectionResult:
    """Benjamini-Hochberg 補正

    Args:
        alpha: 制御する false discovery rate
    """
    m = len(p_values)
    return _corrected(
        CorrectionMethod.BENJAMINI_HOCHBERG, p_values, alpha, lambda rank: rank / m * alpha
    )


def recommend_correction_method(analysis_type: str, num_comparisons: int) -> CorrectionMethod:
    """分析の種類と比較数から補正方法を選ぶ

    - 比較が1つ以下: 補正なし
    - "confirmatory"（出荷判断）: Holm
    - "exploratory" で比較が 10 を超える: Benjamini-Hochberg
    - それ以外: Holm
    """
    if num_comparisons <= 1:
        return CorrectionMethod.NONE
    if analysis_type == "exploratory" and num_comparisons > 10:
        return CorrectionMethod.BENJAMINI_HOCHBERG
    return CorrectionMethod.HOLM


def apply_correction(
    p_values: Sequence[Tuple[str, float]],
    method: CorrectionMethod,
    alpha: float = 0.05,
) -> CorrectionResult:
    """指定した方法で補正する（NONE は各比較を alpha と直接比較）"""
    if method == CorrectionMethod.HOLM:
        return holm_bonferroni(p_values, alpha)
    if method == CorrectionMethod.BONFERRONI:
        return bonferroni(p_values, alpha)
    if method == CorrectionMethod.BENJAMINI_HOCHBERG:
        return benjamini_hochberg(p_values, alpha)

    if not p_values:
        return _empty(CorrectionMethod.NONE, alpha)
    by_index: Dict[int, CorrectedComparison] = {}
    for rank, index in enumerate(_ascending(p_values), start=1):
        name, p = p_values[index]
        by_index[index] = CorrectedComparison(
            comparison=name,
            p_value=p,
            adjusted_p_value=p,
            adjusted_alpha=alpha,
            is_significant=p <= alpha,
            rank=rank,
        )
    return _result(CorrectionMethod.NONE, by_index, alpha)


def _corrected(
    method: CorrectionMethod,
    p_values: Sequence[Tuple[str, float]],
    alpha: float,
    threshold_of_rank: Callable[[int], float],
) -> CorrectionResult:
    if not p_values:
        return _empty(method, alpha)

    reject, adjusted, _, _ = multipletests(
        [p for _, p in p_values], alpha=alpha, method=_STATSMODELS_METHODS[method]
    )
    by_index: Dict[int, CorrectedComparison] = {}
    for rank, index in enumerate(_ascending(p_values), start=1):
        name, p = p_values[index]
        by_index[index] = CorrectedComparison(
            comparison=name,
            p_value=p,
            adjusted_p_value=float(adjusted[index]),
            adjusted_alpha=threshold_of_rank(rank),
            is_significant=bool(reject[index]),
            rank=rank,
        )
    return _result(method, by_index, alpha)


def _ascending(p_values: Sequence[Tuple[str, float]]) -> List[int]:
    # 同じ p値は入力順を保つ（安定ソート）
    return sorted(range(len(p_values)), key=lambda i: p_values[i][1])


def _empty(method: CorrectionMethod, alpha: float) -> CorrectionResult:
    return CorrectionResult(method=method, alpha=alpha, message="No comparisons provided")


def _result(
    method: CorrectionMethod,
    by_index: Dict[int, CorrectedComparison],
    alpha: float,
) -> CorrectionResult:
    comparisons = [by_index[i] for i in range(len(by_index))]
    return CorrectionResult(
        method=method,
        comparisons=comparisons,
        alpha=alpha,
        message=_message(method, comparisons, alpha),
    )


def _message(method: CorrectionMethod, comparisons: List[CorrectedComparison], alpha: float) -> str:
    label = _METHOD_LABELS[method]
    total = len(comparisons)
    significant = [c.comparison for c in comparisons if c.is_significant]

    if not significant:
        return (
            f"No significant differences found after {label} "
            f"({total} comparisons, alpha={alpha})."
        )
    if len(significant) == total:
        return f"All {total} comparisons are significant after {label} (alpha={alpha})."
    return (
        f"{len(significant)} of {total} comparisons significant after "
        f"{label}: {', '.join(significant)}."
    )
