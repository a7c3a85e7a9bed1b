# バンディット報酬の集計
"""
イベントからバンディットの報酬スナップショットを作り、テストに反映する

Allocator は渡されたスナップショットを読むだけなので、定期ジョブなどの
オフライン処理で compute_reward_snapshot → apply_reward_snapshot を行い、
更新後のテストを割り当てに使う。

集計ルール:
    trials     = 露出イベント数
    successes  = アトリビューション期間内のコンバージョンの訪問者数
    reward_sum = アトリビューション期間内の revenue イベントの value 合計

期間の判定は結果集計と同じ attribute_events を通す。ストア上のイベントは
期間外でも attributed のまま記録されているため、ステータスだけでは判定できない。
"""

import logging
import math
from collections import defaultdict
from typing import Dict, Iterable, Optional, Set, Tuple

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.models.experiment import (
    Assignment,
    Event,
    EventType,
    Test,
)
from abtest_engine.tracking.attribution import attribute_events


logger = logging.getLogger(__name__)

RewardSnapshot = Dict[str, Tuple[int, int, float]]
"""variant_id -> (trials, successes, reward_sum)"""


def compute_reward_snapshot(
    test: Test,
    events: Iterable[Event],
    config: Optional[EngineConfig] = None,
    assignments: Optional[Dict[str, Assignment]] = None,
) -> RewardSnapshot:
    """イベントから報酬スナップショットを集計

    隔離されたコンバージョン（割り当て無し・不一致）と
    アトリビューション期間外のコンバージョンは数えない。

    Args:
        test: テスト定義
        events: テストのイベント
        config: エンジン設定（期間の既定値）
        assignments: visitor_id -> 割り当て（露出の無い訪問者の起点）
    """
    variant_ids = set(test.variant_ids)
    own_events = [e for e in events if e.test_id == test.id]
    report = attribute_events(test, own_events, config, assignments)

    trials: Dict[str, int] = defaultdict(int)
    converted: Dict[str, Set[str]] = defaultdict(set)
    rewards: Dict[str, float] = defaultdict(float)

    for event in own_events:
        if event.event_type == EventType.EXPOSURE and event.variant_id in variant_ids:
            trials[event.variant_id] += 1

    for event in report.attributed:
        if event.variant_id not in variant_ids:
            continue
        converted[event.variant_id].add(event.visitor_id)
        if event.event_type == EventType.REVENUE:
            rewards[event.variant_id] += event.value

    if report.excluded:
        logger.debug(
            f"バンディット集計から除外: test_id={test.id}, conversions={len(report.excluded)}"
        )

    return {
        variant_id: (trials[variant_id], len(converted[variant_id]), rewards[variant_id])
        for variant_id in test.variant_ids
    }


def apply_reward_snapshot(test: Test, snapshot: RewardSnapshot) -> Test:
    """スナップショットを反映したテストを返す（元のテストは変更しない）"""
    updated = test.with_bandit_stats(snapshot)
    logger.info(
        f"バンディット統計を更新: test_id={test.id}, "
        + ", ".join(
            f"{v.id}={v.successes}/{v.trials}" for v in updated.variants
        )
    )
    return updated


def thompson_weights(test: Test) -> Dict[str, int]:
    """Beta 事後分布の平均から固定配分用の重みを計算

    score = (successes + 1) / (trials + 2)
    重みは score の比で 100 を配分し、四捨五入の誤差は先頭バリアントで吸収する。

    Returns:
        variant_id -> 重み（合計 100）
    """
    if not test.variants:
        return {}

    scores = []
    for variant in test.variants:
        alpha = variant.successes + 1
        beta = max(variant.trials - variant.successes, 0) + 1
        scores.append((variant.id, alpha / (alpha + beta)))

    total = sum(score for _, score in scores)
    weights = {
        variant_id: int(math.floor(score / total * 100 + 0.5))
        for variant_id, score in scores
    }
    remainder = 100 - sum(weights.values())
    if remainder:
        weights[scores[0][0]] += remainder
    return weights
