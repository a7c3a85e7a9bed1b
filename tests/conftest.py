# 共通フィクスチャ
"""
テスト定義・ストア・設定のファクトリ

各テストモジュールで同じテスト定義を組み立てる手間を省く。
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.db.store import InMemoryExperimentStore
from abtest_engine.models.experiment import (
    AllocationMode,
    Test,
    TestStatus,
    Variant,
)


@pytest.fixture
def config():
    """テスト用設定（リサンプル数を減らし、シードを固定）"""
    return EngineConfig(
        bootstrap_samples=1000,
        bootstrap_seed=42,
        event_batch_size=1000,
        event_flush_interval_seconds=60.0,
    )


@pytest.fixture
def store():
    """メモリストア"""
    return InMemoryExperimentStore()


@pytest.fixture
def make_test():
    """テスト定義のファクトリ

    使用例:
        test = make_test(weights={"control": 50, "variant_a": 50})
    """

    def _make(
        test_id: str = "checkout_button",
        weights=None,
        status: TestStatus = TestStatus.RUNNING,
        allocation_mode: AllocationMode = AllocationMode.FIXED,
        **kwargs,
    ) -> Test:
        if weights is None:
            weights = {"control": 50, "variant_a": 50}
        variants = [
            Variant(id=variant_id, name=variant_id, weight=weight, is_control=(index == 0))
            for index, (variant_id, weight) in enumerate(weights.items())
        ]
        kwargs.setdefault("start_at", datetime(2024, 1, 1))
        return Test(
            id=test_id,
            tenant_id=kwargs.pop("tenant_id", "tenant_1"),
            name=kwargs.pop("name", test_id),
            status=status,
            variants=variants,
            allocation_mode=allocation_mode,
            **kwargs,
        )

    return _make


@pytest.fixture
def mock_cursor():
    """モックカーソル"""
    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=None)
    return cursor


@pytest.fixture
def mock_db(mock_cursor):
    """モックDB接続"""
    db = MagicMock()
    db.get_cursor = MagicMock(return_value=mock_cursor)
    return db
