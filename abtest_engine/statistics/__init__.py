# Statistics モジュール
from abtest_engine.statistics.bootstrap import (
    BootstrapResult,
    approximate_p_value,
    bootstrap_confidence_interval,
    bootstrap_conversion_rate,
    bootstrap_difference,
    bootstrap_ratio,
    is_significant,
    permutation_test,
)
from abtest_engine.statistics.core import (
    PValue,
    PValueKind,
    calculate_power,
    calculate_sample_size,
)
from abtest_engine.statistics.cuped import (
    CupedComparison,
    CupedResult,
    apply_cuped,
    calculate_adjusted_values,
    compare_with_cuped,
)
from abtest_engine.statistics.drift import (
    DriftResult,
    DriftSeverity,
    VisitorSnapshot,
    detect_drift,
    detect_time_drift,
)
from abtest_engine.statistics.multiple_testing import (
    CorrectionMethod,
    CorrectionResult,
    apply_correction,
    benjamini_hochberg,
    bonferroni,
    holm_bonferroni,
    recommend_correction_method,
)
from abtest_engine.statistics.novelty import (
    DailyLift,
    NoveltyResult,
    detect_learning_effect,
    detect_novelty_effect,
)

__all__ = [
    "BootstrapResult",
    "CorrectionMethod",
    "CorrectionResult",
    "CupedComparison",
    "CupedResult",
    "DailyLift",
    "DriftResult",
    "DriftSeverity",
    "NoveltyResult",
    "PValue",
    "PValueKind",
    "VisitorSnapshot",
    "apply_correction",
    "apply_cuped",
    "approximate_p_value",
    "benjamini_hochberg",
    "bonferroni",
    "bootstrap_confidence_interval",
    "bootstrap_conversion_rate",
    "bootstrap_difference",
    "bootstrap_ratio",
    "calculate_adjusted_values",
    "calculate_power",
    "calculate_sample_size",
    "compare_with_cuped",
    "detect_drift",
    "detect_learning_effect",
    "detect_novelty_effect",
    "detect_time_drift",
    "holm_bonferroni",
    "is_significant",
    "permutation_test",
    "recommend_correction_method",
]
