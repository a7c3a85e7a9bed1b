# 割り当てオーケストレーター
"""
ターゲティング評価・バケット計算・配分・永続化を組み合わせて
固定（sticky）割り当てを作成する

処理フロー:
    assign_visitor(test, ctx)
        ↓
    テストが running でない → not_assigned
        ↓
    ターゲティング評価（bot / 社内トラフィック除外を含む）
    ├── 除外 → not_assigned（エラーではない）
    └── 強制割り当て → forced（永続化しない）
        ↓
    既存の有効な割り当て → そのまま返す（重み変更後も再割り当てしない）
        ↓
    bucket = hasher(test.id, visitor_id) → allocate → put_assignment_if_absent

同じ (test, visitor) に対する初回呼び出しが並行しても、バリアントは
(test, visitor) の純粋関数でありストアは insert-or-ignore なので、
どちらの呼び出しも同じ割り当てを受け取る。ロックは不要。

永続化の失敗は PersistenceError として呼び出し側に伝播する。
コントロールへのフェイルオープンはサービス層（analysis.results）で行う。
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

from abtest_engine.assignment.allocator import allocate
from abtest_engine.assignment.hasher import BucketFunction, bucket
from abtest_engine.assignment.targeting import (
    TargetingResult,
    evaluate,
    evaluate_multiple_tests,
)
from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.db.store import ExperimentStore
from abtest_engine.models.experiment import (
    Assignment,
    AssignmentResult,
    AssignmentStatus,
    Test,
    VisitorContext,
)
from abtest_engine.monitoring.metrics_collector import EngineMetrics, Timer


logger = logging.getLogger(__name__)


class AssignmentOrchestrator:
    """訪問者の割り当てを管理するクラス

    使用例:
        store = InMemoryExperimentStore()
        orchestrator = AssignmentOrchestrator(store, EngineConfig())

        result = orchestrator.assign_visitor(test, VisitorContext("v1", "tenant_1"))
        if result.is_assigned:
            render(result.variant_id)

    Attributes:
        store: 永続化コラボレーター
        config: エンジン設定
        hasher: バケット関数（既定は Murmur3 の bucket）
        metrics: メトリクス（オプション）
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[EngineConfig] = None,
        hasher: BucketFunction = bucket,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.hasher = hasher
        self.metrics = metrics

    def assign_visitor(
        self,
        test: Test,
        ctx: VisitorContext,
        now: Optional[datetime] = None,
    ) -> AssignmentResult:
        """訪問者をテストのバリアントに割り当てる

        Args:
            test: テスト定義
            ctx: 訪問者コンテキスト
            now: 現在時刻（テスト用）

        Returns:
            AssignmentResult

        Raises:
            PersistenceError: 割り当ての読み書きに失敗した場合
            ConfigurationError: テスト定義が不正な場合
        """
        with Timer() as timer:
            if not test.is_running:
                result = AssignmentResult.not_assigned("test_not_running")
            else:
                targeting = evaluate(test.targeting_rules, ctx, test.id)
                result = self._assign_after_targeting(test, ctx, targeting, now)

        if self.metrics is not None:
            self.metrics.record_assignment(result.status.value, timer.elapsed)
        return result

    async def assign_visitor_async(
        self,
        test: Test,
        ctx: VisitorContext,
        now: Optional[datetime] = None,
    ) -> AssignmentResult:
        """assign_visitor を別スレッドで実行（イベントループをブロックしない）"""
        return await asyncio.to_thread(self.assign_visitor, test, ctx, now)

    def assign_multiple(
        self,
        tests: Iterable[Test],
        ctx: VisitorContext,
        now: Optional[datetime] = None,
    ) -> Dict[str, AssignmentResult]:
        """複数テストへの割り当てを一括で行う

        コンテキストの展開は1回だけ行い、対象となるテストの結果のみ返す。

        Returns:
            test_id -> AssignmentResult
        """
        results = {}
        for test, targeting in evaluate_multiple_tests(tests, ctx):
            with Timer() as timer:
                result = self._assign_after_targeting(test, ctx, targeting, now)
            if self.metrics is not None:
                self.metrics.record_assignment(result.status.value, timer.elapsed)
            if result.is_assigned:
                results[test.id] = result
        return results

    def _assign_after_targeting(
        self,
        test: Test,
        ctx: VisitorContext,
        targeting: TargetingResult,
        now: Optional[datetime],
    ) -> AssignmentResult:
        if not targeting.included:
            return AssignmentResult.not_assigned(targeting.reason)

        if targeting.forced_variant is not None:
            if test.get_variant(targeting.forced_variant) is not None:
                return self._forced_result(test, ctx, targeting.forced_variant, now)

            logger.warning(
                f"強制割り当てを無視: 未知のバリアント: "
                f"test_id={test.id}, variant_id={targeting.forced_variant}"
            )
            # 強制割り当てで迂回したルール評価をやり直す
            targeting = evaluate(test.targeting_rules, ctx)
            if not targeting.included:
                return AssignmentResult.not_assigned(targeting.reason)

        current_time = now or datetime.now()
        existing = self.store.get_assignment(ctx.tenant_id, test.id, ctx.visitor_id)
        if existing is not None and existing.is_active(current_time):
            logger.debug(
                f"既存の割り当てを返却: test_id={test.id}, "
                f"visitor_id={ctx.visitor_id}, variant_id={existing.variant_id}"
            )
            return AssignmentResult(
                status=AssignmentStatus.ASSIGNED, assignment=existing, reason="sticky"
            )

        bucket_value = self.hasher(test.id, ctx.visitor_id)
        variant_id = allocate(test, bucket_value)
        candidate = Assignment(
            tenant_id=ctx.tenant_id,
            test_id=test.id,
            visitor_id=ctx.visitor_id,
            variant_id=variant_id,
            bucket=bucket_value,
            assigned_at=current_time,
        )
        stored = self.store.put_assignment_if_absent(candidate)

        logger.debug(
            f"新規割り当て: test_id={test.id}, visitor_id={ctx.visitor_id}, "
            f"bucket={bucket_value}, variant_id={stored.variant_id}"
        )
        return AssignmentResult(
            status=AssignmentStatus.ASSIGNED, assignment=stored, reason="new"
        )

    def _forced_result(
        self,
        test: Test,
        ctx: VisitorContext,
        variant_id: str,
        now: Optional[datetime],
    ) -> AssignmentResult:
        # 強制割り当てはハッシュを使わず、記録もしない
        assignment = Assignment(
            tenant_id=ctx.tenant_id,
            test_id=test.id,
            visitor_id=ctx.visitor_id,
            variant_id=variant_id,
            bucket=-1,
            assigned_at=now or datetime.now(),
            forced=True,
        )
        logger.debug(
            f"強制割り当て: test_id={test.id}, visitor_id={ctx.visitor_id}, "
            f"variant_id={variant_id}"
        )
        return AssignmentResult(
            status=AssignmentStatus.FORCED, assignment=assignment, reason="forced"
        )
