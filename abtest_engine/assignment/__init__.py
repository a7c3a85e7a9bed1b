# Assignment モジュール
"""
訪問者の割り当て

hasher → targeting → allocator を orchestrator が組み合わせる。
テストの状態遷移は lifecycle で行う。
"""

from abtest_engine.assignment.allocator import allocate, validate_weights
from abtest_engine.assignment.hasher import HASH_VERSION, bucket
from abtest_engine.assignment.lifecycle import (
    activate_test,
    complete_test,
    pause_test,
    resume_test,
    validate_test,
)
from abtest_engine.assignment.orchestrator import AssignmentOrchestrator
from abtest_engine.assignment.targeting import TargetingResult, evaluate

__all__ = [
    "AssignmentOrchestrator",
    "HASH_VERSION",
    "TargetingResult",
    "activate_test",
    "allocate",
    "bucket",
    "complete_test",
    "evaluate",
    "pause_test",
    "resume_test",
    "validate_test",
    "validate_weights",
]
