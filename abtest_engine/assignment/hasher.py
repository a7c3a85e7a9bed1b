# 決定論的バケット割り当て
"""
Hasher: (test_id, visitor_id) を 0-99 のバケットに写像する純粋関数群

ハッシュ方式:
    MurmurHash3 x86 32bit（符号なし、seed=0）
    キー = f"{test_id}:{visitor_id}"（UTF-8）
    bucket = hash % 100

ハッシュアルゴリズムとキー形式は HASH_VERSION で固定する。
変更すると実行中テストの既存割り当てと計算結果が食い違うため、
変更はすべての割り当てを無効化する移行作業として扱う。

使用例:
    from abtest_engine.assignment.hasher import bucket, is_in_percentage

    b = bucket("checkout_button", "visitor-123")   # 0-99
    if is_in_percentage(b, 20):
        ...  # 20% ロールアウト対象
"""

from typing import Callable

import mmh3


HASH_VERSION = "murmur3_x86_32:seed0:v1"
"""ハッシュ方式の識別子（割り当て記録との整合確認用）"""

NUM_BUCKETS = 100

_HASH_SEED = 0

BucketFunction = Callable[[str, str], int]
"""bucket と同じシグネチャの関数型（テストでの差し替え用）"""


def hash_key(test_id: str, visitor_id: str) -> str:
    """ハッシュ対象のキー文字列を生成"""
    return f"{test_id}:{visitor_id}"


def bucket(test_id: str, visitor_id: str) -> int:
    """訪問者のバケットを計算

    Args:
        test_id: テストID
        visitor_id: 訪問者ID

    Returns:
        0 以上 100 未満の整数
    """
    value = mmh3.hash(hash_key(test_id, visitor_id), _HASH_SEED, signed=False)
    return value % NUM_BUCKETS


def is_in_percentage(bucket_value: int, percentage: float) -> bool:
    """バケットがロールアウト率の範囲内か判定

    percentage は 0-100 に丸め込む。0 は誰も含まず、100 は全員を含む。
    """
    pct = min(max(percentage, 0.0), float(NUM_BUCKETS))
    return bucket_value < pct


def rollout_bucket(flag_key: str, visitor_id: str) -> int:
    """段階的ロールアウト用のバケット（テストと同じハッシュを使用）"""
    return bucket(flag_key, visitor_id)
