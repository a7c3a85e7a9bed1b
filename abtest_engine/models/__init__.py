# Models モジュール
from abtest_engine.models.errors import (
    ABTestError,
    ConfigurationError,
    PersistenceError,
    TestStateError,
)
from abtest_engine.models.experiment import (
    AllocationMode,
    Assignment,
    AssignmentResult,
    AssignmentStatus,
    AttributionStatus,
    Combinator,
    Condition,
    Event,
    EventType,
    Operator,
    Order,
    RuleGroup,
    TargetingRule,
    Test,
    TestStatus,
    TestType,
    Variant,
    VisitorContext,
    rule_from_dict,
    rule_to_dict,
)

__all__ = [
    # 例外
    "ABTestError",
    "ConfigurationError",
    "PersistenceError",
    "TestStateError",
    # テスト定義
    "AllocationMode",
    "Combinator",
    "Condition",
    "Operator",
    "RuleGroup",
    "TargetingRule",
    "Test",
    "TestStatus",
    "TestType",
    "Variant",
    "rule_from_dict",
    "rule_to_dict",
    # 割り当て・イベント
    "Assignment",
    "AssignmentResult",
    "AssignmentStatus",
    "AttributionStatus",
    "Event",
    "EventType",
    "Order",
    "VisitorContext",
]
