# トラフィック配分
"""
Allocator: バケット値と配分設定からバリアントを選ぶ

固定配分:
    宣言順に重みを累積し、bisect で bucket を含む半開区間 [cum_prev, cum) を探す。
    例: control=50, variant_a=50 → bucket 0-49 は control、50-99 は variant_a

バンディット配分（epsilon-greedy）:
    explore = ceil(exploration_rate * 100) 個のバケット（0 .. explore-1）が探索:
        variants[bucket * len(variants) // explore]
    探索バケットを宣言順に連続区間で等分する（割り切れない分は先頭側が1つ多い）。
    それ以外は活用: 観測報酬率（successes / trials）が最大のバリアント
    （同率は先頭に近いものを優先）

探索の「乱数」には別の乱数生成器を使わず、訪問者のハッシュバケットを再利用する。
同じ訪問者は同じ報酬スナップショットに対して常に同じバリアントになる。
暗号論的な乱数ではない。

Allocator は渡されたスナップショットを読むだけで、報酬統計は更新しない
（更新は tracking.bandit_rewards が担当する）。
"""

import bisect
import math
from typing import List

from abtest_engine.models.errors import ConfigurationError
from abtest_engine.models.experiment import AllocationMode, Test, Variant


TOTAL_WEIGHT = 100


def allocate(test: Test, bucket: int) -> str:
    """バケットに対応するバリアントIDを返す

    Args:
        test: テスト定義（バンディット配分では報酬スナップショットを含む）
        bucket: 0-99 のバケット

    Returns:
        バリアントID

    Raises:
        ConfigurationError: バリアントが無い、または固定配分の重みが不正な場合
    """
    variants = test.variants
    if not variants:
        raise ConfigurationError(f"Test has no variants: test_id={test.id}")
    if len(variants) == 1:
        return variants[0].id

    if test.allocation_mode == AllocationMode.BANDIT:
        return _allocate_bandit(variants, test.exploration_rate, bucket)
    return _allocate_fixed(test, bucket)


def validate_weights(test: Test) -> None:
    """固定配分の重みを検証

    重みの合計はちょうど 100（許容誤差なし）、負の重みは不可。

    Raises:
        ConfigurationError: 検証に失敗した場合
    """
    if not test.variants:
        raise ConfigurationError(f"Test has no variants: test_id={test.id}")

    for variant in test.variants:
        if not isinstance(variant.weight, int) or isinstance(variant.weight, bool):
            raise ConfigurationError(
                f"Variant weight must be an integer: "
                f"test_id={test.id}, variant_id={variant.id}, weight={variant.weight!r}"
            )
        if variant.weight < 0:
            raise ConfigurationError(
                f"Variant weight must not be negative: "
                f"test_id={test.id}, variant_id={variant.id}, weight={variant.weight}"
            )

    total = sum(v.weight for v in test.variants)
    if total != TOTAL_WEIGHT:
        raise ConfigurationError(
            f"Variant weights must sum to {TOTAL_WEIGHT}: test_id={test.id}, total={total}"
        )


def cumulative_weights(variants: List[Variant]) -> List[int]:
    """累積重みのリスト（例: [50, 50] → [50, 100]）"""
    cumulative = []
    running = 0
    for variant in variants:
        running += variant.weight
        cumulative.append(running)
    return cumulative


def _allocate_fixed(test: Test, bucket: int) -> str:
    validate_weights(test)
    cumulative = cumulative_weights(test.variants)
    # bisect_right: bucket == cum_prev は次の区間に入る（半開区間）
    index = bisect.bisect_right(cumulative, bucket)
    return test.variants[index].id


def _allocate_bandit(variants: List[Variant], exploration_rate: float, bucket: int) -> str:
    # 0.07 * 100 = 7.000000000000001 のような誤差で区間が広がらないよう丸める
    explore_buckets = math.ceil(round(exploration_rate * TOTAL_WEIGHT, 9))
    if bucket < explore_buckets:
        return variants[bucket * len(variants) // explore_buckets].id

    best_index = 0
    best_rate = variants[0].reward_rate
    for index, variant in enumerate(variants[1:], start=1):
        if variant.reward_rate > best_rate:
            best_index = index
            best_rate = variant.reward_rate
    return variants[best_index].id
