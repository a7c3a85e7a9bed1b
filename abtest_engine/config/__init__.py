# Config モジュール
from abtest_engine.config.engine_config import EngineConfig

__all__ = [
    "EngineConfig",
]
