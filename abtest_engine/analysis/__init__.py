# Analysis モジュール
from abtest_engine.analysis.ltv import (
    CustomerLTVData,
    LTVAnalysis,
    LTVComparison,
    calculate_ltv,
    compare_ltv,
)
from abtest_engine.analysis.results import (
    ExperimentService,
    TestResults,
    VariantComparison,
    VariantStats,
)

__all__ = [
    "CustomerLTVData",
    "ExperimentService",
    "LTVAnalysis",
    "LTVComparison",
    "TestResults",
    "VariantComparison",
    "VariantStats",
    "calculate_ltv",
    "compare_ltv",
]
