# ターゲティングルール評価
"""
訪問者コンテキストをルール木と照合する

評価ルール:
- bot / 社内トラフィックは常に除外（強制割り当てがあっても除外）
- 強制割り当て（クエリパラメータ・事前設定 cookie）はルール評価を迂回する
- トップレベルのルールリストは暗黙の AND。空リストは全員対象
- 属性が存在しない（None）条件は演算子に関係なく不成立（neq を含む）
- AND は最初の偽で、OR は最初の真で評価を打ち切る

評価は副作用のない純粋関数なので、ロックなしで並行に呼び出してよい。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from abtest_engine.models.errors import ConfigurationError
from abtest_engine.models.experiment import (
    Combinator,
    Condition,
    Operator,
    RuleGroup,
    TargetingRule,
    Test,
    VisitorContext,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetingResult:
    """ターゲティング評価結果"""
    included: bool
    forced_variant: Optional[str] = None
    reason: str = ""


def evaluate(
    rules: Sequence[TargetingRule],
    ctx: VisitorContext,
    test_id: Optional[str] = None,
) -> TargetingResult:
    """訪問者がルールに合致するか評価

    Args:
        rules: トップレベルのルールリスト（暗黙の AND）
        ctx: 訪問者コンテキスト
        test_id: 強制割り当てを参照するテストID（None の場合は参照しない）

    Returns:
        TargetingResult
    """
    return _evaluate_with_attributes(rules, ctx, ctx.to_attributes(), test_id)


def evaluate_multiple_tests(
    tests: Iterable[Test],
    ctx: VisitorContext,
) -> List[Tuple[Test, TargetingResult]]:
    """複数テストを1回のコンテキスト展開で評価

    running でないテストと対象外のテストは結果に含めない。

    Returns:
        (テスト, 評価結果) のリスト（入力順）
    """
    attributes = ctx.to_attributes()
    qualified = []
    for test in tests:
        if not test.is_running:
            continue
        result = _evaluate_with_attributes(test.targeting_rules, ctx, attributes, test.id)
        if result.included:
            qualified.append((test, result))
    return qualified


def validate_rules(rules: Sequence[TargetingRule]) -> None:
    """ルール木の構造を検証

    Raises:
        ConfigurationError: 未知の演算子・結合子、空グループ、
            リストでない in 条件がある場合
    """
    for rule in rules:
        _validate_rule(rule)


def evaluate_rule(rule: TargetingRule, attributes: Dict[str, Any]) -> bool:
    """単一のルールノードを評価"""
    if isinstance(rule, RuleGroup):
        if rule.combinator == Combinator.AND:
            return all(evaluate_rule(child, attributes) for child in rule.children)
        return any(evaluate_rule(child, attributes) for child in rule.children)
    return evaluate_condition(rule, attributes.get(rule.attribute))


def evaluate_condition(condition: Condition, actual: Optional[Any]) -> bool:
    """条件を属性値に対して評価

    属性が None の場合は常に False。
    """
    if actual is None:
        return False

    op = condition.operator
    expected = condition.value

    if op == Operator.EQ:
        return _coerce_equal(actual, expected)
    if op == Operator.NEQ:
        return not _coerce_equal(actual, expected)
    if op == Operator.IN:
        if not isinstance(expected, (list, tuple)):
            return False
        return any(_coerce_equal(actual, item) for item in expected)
    if op == Operator.GT or op == Operator.LT:
        left = _to_number(actual)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == Operator.GT else left < right
    if op == Operator.CONTAINS:
        if isinstance(actual, (list, tuple, set, frozenset)):
            return any(_coerce_equal(item, expected) for item in actual)
        return str(expected) in str(actual)
    return False


# ============================================================================
# 内部処理
# ============================================================================


def _evaluate_with_attributes(
    rules: Sequence[TargetingRule],
    ctx: VisitorContext,
    attributes: Dict[str, Any],
    test_id: Optional[str],
) -> TargetingResult:
    if ctx.is_bot:
        return TargetingResult(included=False, reason="bot_traffic")
    if ctx.is_internal:
        return TargetingResult(included=False, reason="internal_traffic")

    forced = ctx.forced_variants.get(test_id) if test_id is not None else None
    if forced:
        return TargetingResult(included=True, forced_variant=forced, reason="forced")

    for rule in rules:
        if not evaluate_rule(rule, attributes):
            logger.debug(
                f"ターゲティング不一致: test_id={test_id}, visitor_id={ctx.visitor_id}"
            )
            return TargetingResult(included=False, reason="targeting_mismatch")

    return TargetingResult(included=True, reason="matched")


def _validate_rule(rule: Any) -> None:
    if isinstance(rule, RuleGroup):
        if not isinstance(rule.combinator, Combinator):
            raise ConfigurationError(f"Unknown combinator: {rule.combinator!r}")
        if not rule.children:
            raise ConfigurationError("Rule group must have at least one child")
        for child in rule.children:
            _validate_rule(child)
        return

    if not isinstance(rule, Condition):
        raise ConfigurationError(f"Unknown targeting rule node: {type(rule).__name__}")
    if not isinstance(rule.operator, Operator):
        raise ConfigurationError(f"Unknown operator: {rule.operator!r}")
    if not rule.attribute:
        raise ConfigurationError("Condition attribute must not be empty")
    if rule.operator == Operator.IN and not isinstance(rule.value, (list, tuple)):
        raise ConfigurationError(
            f"Operator 'in' requires a list value (attribute={rule.attribute})"
        )


def _coerce_equal(actual: Any, expected: Any) -> bool:
    """等値比較（型が異なる場合のみ文字列化して比較、大文字小文字は区別）"""
    if type(actual) is type(expected):
        return actual == expected
    return str(actual) == str(expected)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None
