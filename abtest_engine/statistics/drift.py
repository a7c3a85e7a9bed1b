# 母集団ドリフトの検出
"""
テスト期間中に訪問者の構成が変わっていないかを調べる

割り当て時刻順に並べた訪問者の先頭 period_fraction を前期、末尾 period_fraction を後期とし、
次元（デバイス・国・流入元など）ごとにカテゴリ別の人数を 2×k の分割表にして
scipy.stats.chi2_contingency で独立性を検定する。値の無い訪問者は "(unknown)" に数える。

    drift_score = 1 - p（次元ごと）、overall = 次元の drift_score の平均
    重大度: 有意な次元が2つ以上 or overall > 0.7 → high
            有意な次元が1つ or overall > 0.5 → medium
            overall > 0.3 → low、それ以外 → none

detect_time_drift は到着時刻そのもの（曜日・4時間帯）を同じ方法で比べる。

使用例:
    snapshots = [VisitorSnapshot.from_context(ctx, assigned_at) for ctx, assigned_at in rows]
    result = detect_drift(snapshots, dimensions=("device_type", "country"))
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from abtest_engine.models.experiment import VisitorContext
from abtest_engine.statistics.core import PValue, PValueKind, mean


logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "(unknown)"
DEFAULT_DIMENSIONS = ("device_type", "country", "utm_source")

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_HOUR_BLOCKS = ("00-04", "04-08", "08-12", "12-16", "16-20", "20-24")


class DriftSeverity(str, Enum):
    """ドリフトの重大度"""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class VisitorSnapshot:
    """ドリフト判定用の訪問者の属性"""
    visitor_id: str
    assigned_at: datetime
    dimensions: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_context(cls, context: VisitorContext, assigned_at: datetime) -> "VisitorSnapshot":
        """VisitorContext の値のある属性を文字列にして保持"""
        dimensions = {
            name: str(value)
            for name, value in context.to_attributes().items()
            if name not in ("visitor_id", "tenant_id")
        }
        return cls(visitor_id=context.visitor_id, assigned_at=assigned_at, dimensions=dimensions)


@dataclass(frozen=True)
class DriftShift:
    """カテゴリの構成比の変化（ポイント）"""
    category: str
    before_percent: float
    after_percent: float

    @property
    def shift(self) -> float:
        return self.after_percent - self.before_percent


@dataclass
class DriftDimension:
    """1次元のドリフト判定"""
    dimension: str
    drift_score: float
    before: Dict[str, float]
    """前期の構成比"""
    after: Dict[str, float]
    """後期の構成比"""
    significant: bool
    chi_squared: float
    p_value: PValue
    major_shifts: List[DriftShift] = field(default_factory=list)

    def to_dict(self):
        return {
            "dimension": self.dimension,
            "drift_score": self.drift_score,
            "before": self.before,
            "after": self.after,
            "significant": self.significant,
            "chi_squared": self.chi_squared,
            "p_value": self.p_value.to_dict(),
            "major_shifts": [
                {
                    "category": s.category,
                    "before_percent": s.before_percent,
                    "after_percent": s.after_percent,
                    "shift": s.shift,
                }
                for s in self.major_shifts
            ],
        }


@dataclass
class DriftResult:
    """ドリフト判定の結果"""
    detected: bool
    severity: DriftSeverity
    dimensions: List[DriftDimension] = field(default_factory=list)
    overall_drift_score: float = 0.0
    message: str = ""
    recommendations: List[str] = field(default_factory=list)

    @property
    def significant_dimensions(self) -> List[DriftDimension]:
        return [d for d in self.dimensions if d.significant]

    def to_dict(self):
        return {
            "detected": self.detected,
            "severity": self.severity.value,
            "overall_drift_score": self.overall_drift_score,
            "message": self.message,
            "recommendations": list(self.recommendations),
            "dimensions": [d.to_dict() for d in self.dimensions],
        }


@dataclass
class TimeDriftResult:
    """到着時刻のドリフト判定の結果"""
    detected: bool
    weekday_changed: bool
    hour_changed: bool
    message: str
    weekday: Optional[DriftDimension] = None
    hour: Optional[DriftDimension] = None


def detect_drift(
    visitors: Sequence[VisitorSnapshot],
    dimensions: Sequence[str] = DEFAULT_DIMENSIONS,
    alpha: float = 0.05,
    period_fraction: float = 0.25,
    min_samples: int = 100,
) -> DriftResult:
    """前期と後期の訪問者構成を比較

    Args:
        visitors: 訪問者（順不同。割り当て時刻で並べ替える）
        dimensions: 比較する次元名（VisitorSnapshot.dimensions のキー）
        alpha: 有意水準
        period_fraction: 前期・後期それぞれに使う訪問者の割合
        min_samples: 前期・後期それぞれに必要な最小訪問者数

    Returns:
        DriftResult（訪問者不足なら detected=False、severity=none）
    """
    periods = _split_periods(
        sorted(visitors, key=lambda v: v.assigned_at), period_fraction, min_samples
    )
    if periods is None:
        required = int(math.ceil(min_samples / period_fraction))
        return DriftResult(
            detected=False,
            severity=DriftSeverity.NONE,
            message=f"Insufficient data ({len(visitors)}/{required} visitors)",
            recommendations=["Wait for more data before analyzing drift."],
        )

    early, late = periods
    results = [
        _compare_periods(
            dimension,
            early,
            late,
            lambda v, name=dimension: v.dimensions.get(name),
            alpha,
        )
        for dimension in dimensions
    ]

    significant = [d for d in results if d.significant]
    overall = mean([d.drift_score for d in results])
    if len(significant) >= 2 or overall > 0.7:
        severity = DriftSeverity.HIGH
    elif len(significant) == 1 or overall > 0.5:
        severity = DriftSeverity.MEDIUM
    elif overall > 0.3:
        severity = DriftSeverity.LOW
    else:
        severity = DriftSeverity.NONE

    message, recommendations = _drift_message(severity, significant)
    logger.debug(
        f"ドリフト判定: visitors={len(visitors)}, early={len(early)}, late={len(late)}, "
        f"significant={[d.dimension for d in significant]}, severity={severity.value}"
    )
    return DriftResult(
        detected=bool(significant),
        severity=severity,
        dimensions=results,
        overall_drift_score=overall,
        message=message,
        recommendations=recommendations,
    )


def detect_time_drift(
    arrivals: Sequence[datetime],
    alpha: float = 0.05,
    period_fraction: float = 0.25,
    min_samples: int = 100,
) -> TimeDriftResult:
    """前期と後期で到着の曜日・時間帯の分布が変わったか"""
    periods = _split_periods(sorted(arrivals), period_fraction, min_samples)
    if periods is None:
        return TimeDriftResult(
            detected=False,
            weekday_changed=False,
            hour_changed=False,
            message="Insufficient data for time drift analysis",
        )

    early, late = periods
    weekday = _compare_periods(
        "weekday", early, late, lambda at: _WEEKDAYS[at.weekday()], alpha, _WEEKDAYS
    )
    hour = _compare_periods(
        "hour_block", early, late, lambda at: _HOUR_BLOCKS[at.hour // 4], alpha, _HOUR_BLOCKS
    )

    if weekday.significant and hour.significant:
        message = "Both day-of-week and hour-of-day distributions have changed significantly."
    elif weekday.significant:
        message = "Day-of-week distribution has changed significantly."
    elif hour.significant:
        message = "Hour-of-day distribution has changed significantly."
    else:
        message = "No significant time-based drift detected."

    return TimeDriftResult(
        detected=weekday.significant or hour.significant,
        weekday_changed=weekday.significant,
        hour_changed=hour.significant,
        message=message,
        weekday=weekday,
        hour=hour,
    )


def _split_periods(ordered: Sequence, fraction: float, min_samples: int) -> Optional[Tuple[list, list]]:
    size = int(len(ordered) * fraction)
    if size < max(1, min_samples):
        return None
    return list(ordered[:size]), list(ordered[len(ordered) - size:])


def _compare_periods(
    dimension: str,
    early: Sequence,
    late: Sequence,
    category_of: Callable[[object], Optional[str]],
    alpha: float,
    categories: Sequence[str] = (),
) -> DriftDimension:
    early_counts = _counts(early, category_of, categories)
    late_counts = _counts(late, category_of, categories)

    # 両期間とも 0 のカテゴリは期待度数が 0 になるので除く
    observed = [c for c in early_counts if early_counts[c] + late_counts.get(c, 0) > 0]
    observed += [c for c in late_counts if c not in early_counts and late_counts[c] > 0]

    if len(observed) < 2:
        chi_squared, p = 0.0, 1.0
    else:
        table = np.array([
            [early_counts.get(c, 0) for c in observed],
            [late_counts.get(c, 0) for c in observed],
        ])
        chi_squared, p, _, _ = stats.chi2_contingency(table, correction=False)
        chi_squared, p = float(chi_squared), float(p)

    before = _proportions(early_counts, len(early))
    after = _proportions(late_counts, len(late))
    return DriftDimension(
        dimension=dimension,
        drift_score=min(1.0, max(0.0, 1.0 - p)),
        before=before,
        after=after,
        significant=p < alpha,
        chi_squared=chi_squared,
        p_value=PValue(value=p, kind=PValueKind.CHI_SQUARED),
        major_shifts=_major_shifts(before, after),
    )


def _counts(
    items: Sequence,
    category_of: Callable[[object], Optional[str]],
    categories: Sequence[str],
) -> Dict[str, int]:
    counts: Dict[str, int] = {c: 0 for c in categories}
    for item in items:
        key = category_of(item) or UNKNOWN_CATEGORY
        counts[key] = counts.get(key, 0) + 1
    return counts


def _proportions(counts: Dict[str, int], total: int) -> Dict[str, float]:
    return {c: (n / total if total > 0 else 0.0) for c, n in counts.items()}


def _major_shifts(before: Dict[str, float], after: Dict[str, float]) -> List[DriftShift]:
    """1ポイントを超えて変化したカテゴリ（変化の大きい順に最大5件）"""
    shifts = []
    for category in list(before) + [c for c in after if c not in before]:
        shift = DriftShift(
            category=category,
            before_percent=before.get(category, 0.0) * 100.0,
            after_percent=after.get(category, 0.0) * 100.0,
        )
        if abs(shift.shift) > 1.0:
            shifts.append(shift)
    shifts.sort(key=lambda s: abs(s.shift), reverse=True)
    return shifts[:5]


def _drift_message(
    severity: DriftSeverity,
    significant: List[DriftDimension],
) -> Tuple[str, List[str]]:
    if severity == DriftSeverity.HIGH:
        recommendations = [
            "HIGH SEVERITY: Significant population drift detected.",
            "Results may not generalize to the overall population.",
            "Consider segmenting analysis by drifting dimensions or extending the test.",
            "Investigate external factors such as campaigns or seasonality.",
        ]
        for drift in significant:
            if drift.major_shifts:
                top = drift.major_shifts[0]
                recommendations.append(
                    f"{drift.dimension}: \"{top.category}\" shifted from "
                    f"{top.before_percent:.1f}% to {top.after_percent:.1f}%"
                )
        names = ", ".join(d.dimension for d in significant) or "multiple dimensions"
        return f"Significant drift detected in {names}. Results may not generalize.", recommendations

    if severity == DriftSeverity.MEDIUM:
        name = significant[0].dimension if significant else "unknown"
        return (
            f"Moderate drift in {name}. Consider segmented analysis.",
            [
                "MODERATE: Some population drift detected.",
                "Consider segmented analysis to verify results hold.",
                "Monitor for continued drift.",
            ],
        )

    if severity == DriftSeverity.LOW:
        return (
            "Minor population drift detected. Results are likely still valid.",
            ["Minor drift detected but within acceptable range.", "Continue monitoring."],
        )

    return "Population composition is stable. No significant drift detected.", []
