# tests/monitoring/test_metrics_collector.py
"""EngineMetrics のユニットテスト

テスト観点:
- Counter: インクリメント、取得、ラベル管理
- Gauge: 設定、インクリメント、デクリメント
- Histogram: 観測、バケットカウント、合計・回数
- EngineMetrics: 便利メソッド、サマリー、Prometheusフォーマット出力
- スレッドセーフ性
"""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from abtest_engine.monitoring.metrics_collector import (
    Counter,
    EngineMetrics,
    Gauge,
    Histogram,
    Timer,
)


class TestCounter:
    """Counter クラスのテスト"""

    def test_basic_increment(self):
        """基本的なインクリメント"""
        counter = Counter("test_counter", "Test counter")
        assert counter.get() == 0.0

        counter.inc()
        assert counter.get() == 1.0

        counter.inc(value=5.0)
        assert counter.get() == 6.0

    def test_increment_with_labels(self):
        """ラベル付きインクリメント"""
        counter = Counter("assignments_total", "Assignments", ["status"])

        counter.inc({"status": "assigned"})
        counter.inc({"status": "assigned"})
        counter.inc({"status": "forced"})

        assert counter.get({"status": "assigned"}) == 2.0
        assert counter.get({"status": "forced"}) == 1.0
        assert counter.get({"status": "fail_open"}) == 0.0

    def test_negative_increment_raises_error(self):
        """負の値でのインクリメントはエラー"""
        counter = Counter("test_counter", "Test counter")

        with pytest.raises(ValueError, match="Counter can only be incremented"):
            counter.inc(value=-1.0)

    def test_collect(self):
        counter = Counter("events_total", "Events", ["outcome"])
        counter.inc({"outcome": "queued"}, 3.0)
        counter.inc({"outcome": "dropped"})

        results = {tuple(labels.items()): value for labels, value in counter.collect()}

        assert results[(("outcome", "queued"),)] == 3.0
        assert results[(("outcome", "dropped"),)] == 1.0


class TestGauge:
    """Gauge クラスのテスト"""

    def test_set_inc_dec(self):
        gauge = Gauge("buffer_length", "Buffer length")
        assert gauge.get() == 0.0

        gauge.set(value=10.0)
        gauge.inc(value=2.0)
        gauge.dec()
        assert gauge.get() == 11.0


class TestHistogram:
    """Histogram クラスのテスト"""

    def test_basic_observe(self):
        histogram = Histogram("flush_seconds", "Flush latency", buckets=(0.1, 0.5, 1.0, 5.0))
        for value in (0.05, 0.3, 0.8, 2.0):
            histogram.observe(value=value)

        assert histogram.get_count() == 4
        assert histogram.get_sum() == pytest.approx(3.15)

        bucket_counts = histogram.get_bucket_counts()
        assert bucket_counts[0.1] == 1   # 0.05 のみ
        assert bucket_counts[0.5] == 2   # 0.05, 0.3
        assert bucket_counts[1.0] == 3   # 0.05, 0.3, 0.8
        assert bucket_counts[5.0] == 4   # 全て

    def test_default_buckets(self):
        histogram = Histogram("test", "Test")
        assert histogram.buckets == Histogram.DEFAULT_BUCKETS

    def test_unobserved_labels(self):
        histogram = Histogram("test", "Test", ["check"], buckets=(1.0,))
        assert histogram.get_bucket_counts({"check": "srm"}) == {1.0: 0}
        assert histogram.get_count({"check": "srm"}) == 0


class TestEngineMetrics:
    """EngineMetrics クラスのテスト"""

    @pytest.fixture
    def metrics(self):
        return EngineMetrics()

    def test_predefined_metrics_exist(self, metrics):
        assert metrics.get_counter("assignments_total") is not None
        assert metrics.get_counter("events_total") is not None
        assert metrics.get_counter("guardrail_alerts_total") is not None
        assert metrics.get_gauge("event_buffer_length") is not None
        assert metrics.get_histogram("assignment_latency_seconds") is not None
        assert metrics.get_histogram("flush_duration_seconds") is not None
        assert metrics.get_histogram("bootstrap_duration_seconds") is not None
        assert metrics.get_counter("nonexistent") is None

    def test_record_assignment(self, metrics):
        metrics.record_assignment("assigned", 0.002)
        metrics.record_assignment("assigned")
        metrics.record_assignment("fail_open", 0.001)

        counter = metrics.get_counter("assignments_total")
        assert counter.get({"status": "assigned"}) == 2.0
        assert counter.get({"status": "fail_open"}) == 1.0
        assert metrics.get_histogram("assignment_latency_seconds").get_count() == 2

    def test_record_events_skips_zero(self, metrics):
        metrics.record_events("quarantined", 0)
        metrics.record_events("flushed", 5)

        assert metrics.get_summary()["events"] == {"flushed": 5}

    def test_summary(self, metrics):
        metrics.record_buffer_length(12)
        metrics.record_flush_duration(0.02)
        metrics.record_guardrail_alert("sample_ratio_mismatch", "high")
        metrics.record_guardrail_alert("metric_degradation", "medium")

        summary = metrics.get_summary()

        assert summary["event_buffer_length"] == 12
        assert summary["flushes"] == 1
        assert summary["guardrail_alerts"] == 2
        assert "snapshot_at" in summary

    def test_prometheus_format(self, metrics):
        metrics.record_assignment("assigned", 0.002)
        metrics.record_guardrail_alert("sample_ratio_mismatch", "high")

        output = metrics.export_prometheus_format()

        assert "# TYPE abtest_assignments_total counter" in output
        assert 'abtest_assignments_total{status="assigned"} 1.0' in output
        assert (
            'abtest_guardrail_alerts_total{check="sample_ratio_mismatch",severity="high"} 1.0'
            in output
        )
        assert 'abtest_assignment_latency_seconds_bucket{le="+Inf"} 1.0' in output
        assert "# TYPE abtest_event_buffer_length gauge" in output

    def test_label_escaping(self, metrics):
        assert metrics._format_labels({"name": 'a"b'}) == '{name="a\\"b"}'

    def test_custom_prefix(self):
        metrics = EngineMetrics(prefix="shop")
        assert metrics.get_counter("assignments_total").name == "shop_assignments_total"

    def test_thread_safety(self, metrics):
        """並行インクリメントで値が失われない"""

        def work(_):
            for _ in range(100):
                metrics.record_assignment("assigned")

        with ThreadPoolExecutor(max_workers=10) as executor:
            list(executor.map(work, range(10)))

        assert metrics.get_counter("assignments_total").get({"status": "assigned"}) == 1000.0


class TestTimer:
    """Timer のテスト"""

    def test_measures_elapsed(self):
        with Timer() as timer:
            time.sleep(0.01)
        assert timer.elapsed >= 0.01
