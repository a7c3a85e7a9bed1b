# 実験割り当て・統計推論エンジン
"""
A/Bテスト・多腕バンディットの訪問者割り当てと結果推論

- 決定論的な sticky 割り当て（Murmur3 バケット + 重み配分 / epsilon-greedy）
- イベントのバッファリング・重複排除・アトリビューション
- ブートストラップ信頼区間・Holm-Bonferroni 補正・LTV 比較
- SRM / 保護指標のガードレール監視
"""

from abtest_engine.analysis.results import ExperimentService, TestResults
from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.models.errors import (
    ABTestError,
    ConfigurationError,
    PersistenceError,
    TestStateError,
)

__version__ = "1.0.0"

__all__ = [
    "ExperimentService",
    "TestResults",
    "EngineConfig",
    "ABTestError",
    "ConfigurationError",
    "PersistenceError",
    "TestStateError",
]
