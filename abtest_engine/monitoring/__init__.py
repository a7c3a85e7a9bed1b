# Monitoring モジュール
"""監視モジュール

エンジンのメトリクス収集とガードレール監視（SRM・保護指標の劣化）を提供する。
"""

from abtest_engine.monitoring.guardrail_monitor import (
    AlertSeverity,
    GuardrailAlert,
    GuardrailCheck,
    GuardrailMetric,
    GuardrailMonitor,
)
from abtest_engine.monitoring.metrics_collector import (
    Counter,
    EngineMetrics,
    Gauge,
    Histogram,
    Timer,
)

__all__ = [
    # メトリクス収集
    "Counter",
    "EngineMetrics",
    "Gauge",
    "Histogram",
    "Timer",
    # ガードレール
    "AlertSeverity",
    "GuardrailAlert",
    "GuardrailCheck",
    "GuardrailMetric",
    "GuardrailMonitor",
]
