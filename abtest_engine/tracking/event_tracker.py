# イベントトラッカー
"""
露出・コンバージョン・売上イベントのバッファリングと一括書き込み

処理フロー:
    queue_event(event)
    ├── コンバージョン系イベントは dedup_key で重複排除（直近キーのメモリ窓 + ストア制約）
    ├── バッファ上限に達していれば破棄（警告ログ）
    └── バッチサイズに達したらフラッシュを単一ワーカーに引き渡す（呼び出し側は待たない）
        ↓
    flush_events()
    ├── 割り当てとの照合（コンバージョン系イベント）
    │   ├── 割り当て無し → no_assignment（隔離）
    │   ├── バリアント不一致 → variant_mismatch（隔離）
    │   └── バリアント未指定 → 割り当てのバリアントを補完
    ├── 隔離イベントも記録する（統計からは除外される）
    └── 書き込み失敗時はバッチをバッファに戻す（ベストエフォート）

タイマースレッドが event_flush_interval_seconds ごとにフラッシュを起動する。
stop() で停止時フラッシュを試みる。プロセスのクラッシュで未書き込みの
イベントが失われることは許容する（分析用データであり会計記録ではない）。

使用例:
    with EventTracker(store, config) as tracker:
        tracker.queue_event(Event(EventType.EXPOSURE, "tenant_1", "t1", "v1", "control"))
        tracker.queue_event(Event(
            EventType.REVENUE, "tenant_1", "t1", "v1",
            value=42.0, dedup_key="order_1001:t1",
        ))
"""

import logging
import threading
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.db.store import ExperimentStore
from abtest_engine.models.errors import PersistenceError
from abtest_engine.models.experiment import Assignment, AttributionStatus, Event
from abtest_engine.monitoring.metrics_collector import EngineMetrics, Timer


logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """フラッシュ結果

    Attributes:
        flushed: 新規に書き込んだ件数（隔離イベントを含む）
        quarantined: 割り当て不一致で隔離した件数
        duplicates: ストアで重複として無視された件数
        failed: 書き込みに失敗してバッファに戻した件数
    """
    flushed: int = 0
    quarantined: int = 0
    duplicates: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.flushed + self.duplicates + self.failed


class EventTracker:
    """イベントのバッファリング・重複排除・割り当て照合を行うクラス

    Attributes:
        store: 永続化コラボレーター
        config: エンジン設定（バッチサイズ・フラッシュ間隔・バッファ上限）
        metrics: メトリクス（オプション）
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[EngineConfig] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.metrics = metrics

        self._buffer: Deque[Event] = deque()
        self._lock = threading.Lock()
        # フラッシュは同時に1つだけ
        self._flush_lock = threading.Lock()
        self._recent_keys: "OrderedDict[Tuple[str, str, str], None]" = OrderedDict()
        self._flush_scheduled = False

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-flush")
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._closed = False

    # ------------------------------------------------------------------
    # 投入
    # ------------------------------------------------------------------

    def queue_event(self, event: Event) -> bool:
        """イベントをバッファに追加

        永続化の完了は待たない。

        Returns:
            受け付けた場合 True。重複・バッファ満杯で破棄した場合 False
        """
        identity = self._dedup_identity(event)

        with self._lock:
            if identity is not None and identity in self._recent_keys:
                self._recent_keys.move_to_end(identity)
                duplicate = True
            else:
                duplicate = False

            if not duplicate and len(self._buffer) >= self.config.event_buffer_max_size:
                dropped = True
            else:
                dropped = False

            if not duplicate and not dropped:
                if identity is not None:
                    self._remember_key(identity)
                self._buffer.append(event)

            buffered = len(self._buffer)
            should_flush = (
                not duplicate
                and not dropped
                and buffered >= self.config.event_batch_size
                and not self._flush_scheduled
            )

        if duplicate:
            logger.debug(
                f"重複イベントを無視: test_id={event.test_id}, dedup_key={event.dedup_key}"
            )
            self._record("duplicate")
            return False

        if dropped:
            logger.warning(
                f"バッファ満杯のためイベントを破棄: "
                f"test_id={event.test_id}, event_type={event.event_type.value}, "
                f"max_size={self.config.event_buffer_max_size}"
            )
            self._record("dropped")
            return False

        self._record("queued")
        if self.metrics is not None:
            self.metrics.record_buffer_length(buffered)
        if should_flush:
            self._schedule_flush()
        return True

    track_event = queue_event

    @property
    def pending_count(self) -> int:
        """未書き込みのイベント数"""
        with self._lock:
            return len(self._buffer)

    # ------------------------------------------------------------------
    # フラッシュ
    # ------------------------------------------------------------------

    def flush_events(self) -> BatchResult:
        """バッファ内のイベントを割り当てと照合して書き込む

        永続化の失敗は例外にせず、バッチをバッファに戻して failed に計上する。
        """
        with self._flush_lock:
            with self._lock:
                batch = list(self._buffer)
                self._buffer.clear()

            if not batch:
                return BatchResult()

            with Timer() as timer:
                result = self._write_batch(batch)

            if self.metrics is not None:
                self.metrics.record_flush_duration(timer.elapsed)
                self.metrics.record_buffer_length(self.pending_count)
            return result

    def _write_batch(self, batch: List[Event]) -> BatchResult:
        try:
            checked = self._check_attribution(batch)
            written = self.store.append_events(checked)
        except PersistenceError as e:
            self._requeue(batch)
            logger.error(f"イベント書き込み失敗: count={len(batch)}, error={e}")
            self._record("failed", len(batch))
            return BatchResult(failed=len(batch))

        quarantined = sum(
            1 for e in checked
            if e.attribution_status in (
                AttributionStatus.NO_ASSIGNMENT,
                AttributionStatus.VARIANT_MISMATCH,
            )
        )
        duplicates = len(checked) - written

        self._record("flushed", written)
        self._record("quarantined", quarantined)
        self._record("duplicate", duplicates)
        logger.info(
            f"イベントをフラッシュ: flushed={written}, "
            f"quarantined={quarantined}, duplicates={duplicates}"
        )
        return BatchResult(flushed=written, quarantined=quarantined, duplicates=duplicates)

    def _check_attribution(self, batch: List[Event]) -> List[Event]:
        """割り当てと照合してアトリビューション状態を設定

        Raises:
            PersistenceError: 割り当ての読み込みに失敗した場合
        """
        cache: Dict[Tuple[str, str, str], Optional[Assignment]] = {}

        def lookup(event: Event) -> Optional[Assignment]:
            key = (event.tenant_id, event.test_id, event.visitor_id)
            if key not in cache:
                cache[key] = self.store.get_assignment(*key)
            return cache[key]

        checked = []
        for event in batch:
            if not event.is_conversion:
                if event.variant_id is not None:
                    checked.append(event.with_attribution(AttributionStatus.ATTRIBUTED))
                    continue
                assignment = lookup(event)
                if assignment is None:
                    checked.append(event.with_attribution(AttributionStatus.NO_ASSIGNMENT))
                else:
                    checked.append(
                        event.with_attribution(AttributionStatus.ATTRIBUTED, assignment.variant_id)
                    )
                continue

            assignment = lookup(event)
            if assignment is None:
                logger.warning(
                    f"割り当ての無いコンバージョンを隔離: "
                    f"test_id={event.test_id}, visitor_id={event.visitor_id}"
                )
                checked.append(event.with_attribution(AttributionStatus.NO_ASSIGNMENT))
            elif event.variant_id is not None and event.variant_id != assignment.variant_id:
                logger.warning(
                    f"バリアント不一致のコンバージョンを隔離: "
                    f"test_id={event.test_id}, visitor_id={event.visitor_id}, "
                    f"event_variant={event.variant_id}, assigned={assignment.variant_id}"
                )
                checked.append(event.with_attribution(AttributionStatus.VARIANT_MISMATCH))
            else:
                checked.append(
                    event.with_attribution(AttributionStatus.ATTRIBUTED, assignment.variant_id)
                )
        return checked

    def _requeue(self, batch: List[Event]) -> None:
        """失敗したバッチをバッファ先頭に戻す（上限を超える分は古い順に破棄）

        破棄したイベントの重複排除キーは忘れる。Webhook の再送を受け付けて
        1回だけ計上できるようにする。
        """
        with self._lock:
            room = self.config.event_buffer_max_size - len(self._buffer)
            if room < len(batch):
                lost = len(batch) - max(room, 0)
                logger.warning(f"再投入できないイベントを破棄: count={lost}")
                self._record("dropped", lost)
                for event in batch[:lost]:
                    identity = self._dedup_identity(event)
                    if identity is not None:
                        self._recent_keys.pop(identity, None)
                batch = batch[lost:]
            self._buffer.extendleft(reversed(batch))

    def _schedule_flush(self) -> None:
        with self._lock:
            if self._flush_scheduled or self._closed:
                return
            self._flush_scheduled = True
        future = self._executor.submit(self._background_flush)
        future.add_done_callback(self._log_flush_failure)

    def _background_flush(self) -> BatchResult:
        try:
            return self.flush_events()
        finally:
            with self._lock:
                self._flush_scheduled = False

    @staticmethod
    def _log_flush_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"バックグラウンドフラッシュで予期しないエラー: error={error!r}")

    # ------------------------------------------------------------------
    # タイマー・停止
    # ------------------------------------------------------------------

    def start(self) -> None:
        """タイマーフラッシュのスレッドを開始"""
        if self._timer_thread is not None:
            return
        self._stop_event.clear()
        self._timer_thread = threading.Thread(
            target=self._run_timer, name="event-flush-timer", daemon=True
        )
        self._timer_thread.start()
        logger.info(
            f"イベントトラッカー開始: interval={self.config.event_flush_interval_seconds}s, "
            f"batch_size={self.config.event_batch_size}"
        )

    def stop(self) -> BatchResult:
        """タイマーを止め、残りのイベントをフラッシュする（ベストエフォート）"""
        self._stop_event.set()
        if self._timer_thread is not None:
            self._timer_thread.join()
            self._timer_thread = None

        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)

        result = self.flush_events()
        if result.failed:
            logger.error(f"停止時フラッシュで書き込めないイベントがあります: count={result.failed}")
        logger.info("イベントトラッカー停止")
        return result

    def _run_timer(self) -> None:
        while not self._stop_event.wait(self.config.event_flush_interval_seconds):
            if self.pending_count > 0:
                self._schedule_flush()

    def __enter__(self) -> "EventTracker":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    @staticmethod
    def _dedup_identity(event: Event) -> Optional[Tuple[str, str, str]]:
        if event.is_conversion and event.dedup_key:
            return (event.tenant_id, event.test_id, event.dedup_key)
        return None

    def _remember_key(self, identity: Tuple[str, str, str]) -> None:
        self._recent_keys[identity] = None
        while len(self._recent_keys) > self.config.dedup_window_size:
            self._recent_keys.popitem(last=False)

    def _record(self, outcome: str, count: int = 1) -> None:
        if self.metrics is not None:
            self.metrics.record_events(outcome, count)
