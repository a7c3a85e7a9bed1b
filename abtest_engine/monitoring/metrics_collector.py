# エンジン内部メトリクス
"""
割り当て・イベント追跡・ガードレールの運用メトリクス

prometheus_client に依存しない簡易実装。インターフェースは Prometheus の
Counter / Gauge / Histogram に合わせてあり、export_prometheus_format で
テキスト形式を出力できる。

収集するメトリクス:
- 割り当て: 結果ステータス別の件数、割り当て処理のレイテンシ
- イベント: キュー投入・書き込み・隔離・重複・破棄・失敗の件数、バッファ長、フラッシュ時間
- ガードレール: 重大度別のアラート件数
- 統計: ブートストラップ計算時間

グローバルなシングルトンは持たない。EngineMetrics を構築して各コンポーネントに渡す。
"""

import time
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple


class _LabeledMetric:
    """ラベル付きメトリクスの共通部分"""

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.labels = labels or []
        self._lock = Lock()

    def _get_label_key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        if not self.labels:
            return ()
        if labels is None:
            labels = {}
        return tuple(str(labels.get(label, "")) for label in self.labels)

    def _label_dict(self, label_key: Tuple[str, ...]) -> Dict[str, str]:
        return dict(zip(self.labels, label_key)) if self.labels else {}


class Counter(_LabeledMetric):
    """カウンターメトリクス（単調増加）

    使用例:
        counter = Counter("assignments_total", "Assignments", ["status"])
        counter.inc({"status": "assigned"})
    """

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ):
        super().__init__(name, description, labels)
        self._values: Dict[Tuple[str, ...], float] = {}

    def inc(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
    ) -> None:
        """カウンターをインクリメント

        Raises:
            ValueError: 負の値が指定された場合
        """
        if value < 0:
            raise ValueError("Counter can only be incremented (value must be >= 0)")

        label_key = self._get_label_key(labels)
        with self._lock:
            self._values[label_key] = self._values.get(label_key, 0.0) + value

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        label_key = self._get_label_key(labels)
        with self._lock:
            return self._values.get(label_key, 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [(self._label_dict(key), value) for key, value in self._values.items()]


class Gauge(_LabeledMetric):
    """ゲージメトリクス（上下する値）"""

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ):
        super().__init__(name, description, labels)
        self._values: Dict[Tuple[str, ...], float] = {}

    def set(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 0.0,
    ) -> None:
        label_key = self._get_label_key(labels)
        with self._lock:
            self._values[label_key] = value

    def inc(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
    ) -> None:
        label_key = self._get_label_key(labels)
        with self._lock:
            self._values[label_key] = self._values.get(label_key, 0.0) + value

    def dec(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
    ) -> None:
        self.inc(labels, -value)

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        label_key = self._get_label_key(labels)
        with self._lock:
            return self._values.get(label_key, 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [(self._label_dict(key), value) for key, value in self._values.items()]


class Histogram(_LabeledMetric):
    """ヒストグラムメトリクス（分布）

    使用例:
        histogram = Histogram("flush_seconds", "Flush latency", buckets=(0.01, 0.1, 1.0))
        histogram.observe(value=0.042)
    """

    # デフォルトのバケット境界（Prometheus標準）
    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0
    )

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        super().__init__(name, description, labels)
        self.buckets = tuple(sorted(buckets)) if buckets else self.DEFAULT_BUCKETS
        self._bucket_counts: Dict[Tuple[str, ...], Dict[float, int]] = {}
        self._sums: Dict[Tuple[str, ...], float] = {}
        self._counts: Dict[Tuple[str, ...], int] = {}

    def observe(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 0.0,
    ) -> None:
        label_key = self._get_label_key(labels)

        with self._lock:
            if label_key not in self._bucket_counts:
                self._bucket_counts[label_key] = {b: 0 for b in self.buckets}
                self._sums[label_key] = 0.0
                self._counts[label_key] = 0

            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[label_key][bucket] += 1

            self._sums[label_key] += value
            self._counts[label_key] += 1

    def get_bucket_counts(self, labels: Optional[Dict[str, str]] = None) -> Dict[float, int]:
        label_key = self._get_label_key(labels)
        with self._lock:
            if label_key not in self._bucket_counts:
                return {b: 0 for b in self.buckets}
            return dict(self._bucket_counts[label_key])

    def get_sum(self, labels: Optional[Dict[str, str]] = None) -> float:
        label_key = self._get_label_key(labels)
        with self._lock:
            return self._sums.get(label_key, 0.0)

    def get_count(self, labels: Optional[Dict[str, str]] = None) -> int:
        label_key = self._get_label_key(labels)
        with self._lock:
            return self._counts.get(label_key, 0)

    def collect(self) -> List[Tuple[Dict[str, str], Dict[str, float]]]:
        """
        Returns:
            (labels, {"bucket_X": count, ..., "sum": sum, "count": count}) のリスト
        """
        with self._lock:
            results = []
            for label_key, counts in self._bucket_counts.items():
                data = {f"bucket_{bucket}": float(count) for bucket, count in counts.items()}
                data["bucket_+Inf"] = float(self._counts[label_key])
                data["sum"] = self._sums[label_key]
                data["count"] = float(self._counts[label_key])
                results.append((self._label_dict(label_key), data))
            return results


class EngineMetrics:
    """実験エンジンのメトリクス集約

    使用例:
        metrics = EngineMetrics()
        orchestrator = AssignmentOrchestrator(store, config, metrics=metrics)
        ...
        print(metrics.get_summary())
        print(metrics.export_prometheus_format())
    """

    def __init__(self, prefix: str = "abtest"):
        self.prefix = prefix
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._lock = Lock()

        self._init_predefined_metrics()

    def _init_predefined_metrics(self) -> None:
        # === 割り当て ===
        self.register_counter(
            "assignments_total",
            "Assignment outcomes",
            ["status"],  # assigned, not_assigned, forced, fail_open
        )
        self.register_histogram(
            "assignment_latency_seconds",
            "Assignment latency in seconds",
            buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5),
        )

        # === イベント ===
        self.register_counter(
            "events_total",
            "Event tracker outcomes",
            ["outcome"],  # queued, flushed, quarantined, duplicate, dropped, failed
        )
        self.register_gauge(
            "event_buffer_length",
            "Number of buffered events waiting for flush",
        )
        self.register_histogram(
            "flush_duration_seconds",
            "Event flush duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
        )

        # === ガードレール ===
        self.register_counter(
            "guardrail_alerts_total",
            "Guardrail alerts emitted",
            ["check", "severity"],
        )

        # === 統計 ===
        self.register_histogram(
            "bootstrap_duration_seconds",
            "Bootstrap analysis duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
        )

    def register_counter(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ) -> Counter:
        counter = Counter(f"{self.prefix}_{name}", description, labels)
        with self._lock:
            self._counters[name] = counter
        return counter

    def register_gauge(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ) -> Gauge:
        gauge = Gauge(f"{self.prefix}_{name}", description, labels)
        with self._lock:
            self._gauges[name] = gauge
        return gauge

    def register_histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        histogram = Histogram(f"{self.prefix}_{name}", description, labels, buckets)
        with self._lock:
            self._histograms[name] = histogram
        return histogram

    def get_counter(self, name: str) -> Optional[Counter]:
        with self._lock:
            return self._counters.get(name)

    def get_gauge(self, name: str) -> Optional[Gauge]:
        with self._lock:
            return self._gauges.get(name)

    def get_histogram(self, name: str) -> Optional[Histogram]:
        with self._lock:
            return self._histograms.get(name)

    # === 便利メソッド ===

    def record_assignment(self, status: str, latency_seconds: Optional[float] = None) -> None:
        """割り当て結果を記録"""
        self._counters["assignments_total"].inc({"status": status})
        if latency_seconds is not None:
            self._histograms["assignment_latency_seconds"].observe(value=latency_seconds)

    def record_events(self, outcome: str, count: int = 1) -> None:
        """イベント処理結果を記録

        Args:
            outcome: "queued", "flushed", "quarantined", "duplicate", "dropped", "failed"
        """
        if count > 0:
            self._counters["events_total"].inc({"outcome": outcome}, float(count))

    def record_buffer_length(self, length: int) -> None:
        self._gauges["event_buffer_length"].set(value=float(length))

    def record_flush_duration(self, duration_seconds: float) -> None:
        self._histograms["flush_duration_seconds"].observe(value=duration_seconds)

    def record_guardrail_alert(self, check: str, severity: str) -> None:
        self._counters["guardrail_alerts_total"].inc({"check": check, "severity": severity})

    def record_bootstrap_duration(self, duration_seconds: float) -> None:
        self._histograms["bootstrap_duration_seconds"].observe(value=duration_seconds)

    def get_summary(self) -> Dict[str, Any]:
        """主要メトリクスのスナップショット"""
        assignments = self._counters["assignments_total"]
        events = self._counters["events_total"]
        alerts = self._counters["guardrail_alerts_total"]

        return {
            "assignments": {
                labels["status"]: int(value) for labels, value in assignments.collect()
            },
            "events": {labels["outcome"]: int(value) for labels, value in events.collect()},
            "event_buffer_length": int(self._gauges["event_buffer_length"].get()),
            "guardrail_alerts": sum(int(value) for _, value in alerts.collect()),
            "flushes": self._histograms["flush_duration_seconds"].get_count(),
            "snapshot_at": datetime.now().isoformat(),
        }

    def export_prometheus_format(self) -> str:
        """Prometheusテキストフォーマットでエクスポート"""
        lines = []

        with self._lock:
            for counter in self._counters.values():
                lines.append(f"# HELP {counter.name} {counter.description}")
                lines.append(f"# TYPE {counter.name} counter")
                for labels, value in counter.collect():
                    lines.append(f"{counter.name}{self._format_labels(labels)} {value}")
                lines.append("")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.description}")
                lines.append(f"# TYPE {gauge.name} gauge")
                for labels, value in gauge.collect():
                    lines.append(f"{gauge.name}{self._format_labels(labels)} {value}")
                lines.append("")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.description}")
                lines.append(f"# TYPE {histogram.name} histogram")
                for labels, data in histogram.collect():
                    for bucket in histogram.buckets:
                        bucket_labels = self._format_labels({**labels, "le": str(bucket)})
                        count = data.get(f"bucket_{bucket}", 0)
                        lines.append(f"{histogram.name}_bucket{bucket_labels} {count}")
                    inf_labels = self._format_labels({**labels, "le": "+Inf"})
                    lines.append(f"{histogram.name}_bucket{inf_labels} {data.get('count', 0)}")

                    base = self._format_labels(labels)
                    lines.append(f"{histogram.name}_sum{base} {data.get('sum', 0)}")
                    lines.append(f"{histogram.name}_count{base} {data.get('count', 0)}")
                lines.append("")

        return "\n".join(lines)

    def _format_labels(self, labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = []
        for key, value in sorted(labels.items()):
            escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            parts.append(f'{key}="{escaped}"')
        return "{" + ",".join(parts) + "}"


class Timer:
    """経過時間計測用のコンテキストマネージャー

    使用例:
        with Timer() as t:
            ...
        metrics.record_flush_duration(t.elapsed)
    """

    def __init__(self) -> None:
        self.started_at = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "Timer":
        self.started_at = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.elapsed = time.perf_counter() - self.started_at
