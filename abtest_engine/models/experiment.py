# 実験モデル定義
# テスト・バリアント・ターゲティングルール・訪問者コンテキスト・割り当て・イベント

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID, uuid4

from abtest_engine.models.errors import ConfigurationError


class TestStatus(str, Enum):
    """テストのステータス

    状態遷移:
        DRAFT → RUNNING ⇄ PAUSED → COMPLETED
                  └────────────────→ COMPLETED
    """
    __test__ = False

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class TestType(str, Enum):
    """テストの種類"""
    __test__ = False

    FIXED = "fixed"
    BANDIT = "bandit"
    SHIPPING = "shipping"


class AllocationMode(str, Enum):
    """トラフィック配分方式"""
    FIXED = "fixed"      # 固定重み
    BANDIT = "bandit"    # epsilon-greedy 多腕バンディット


class Operator(str, Enum):
    """ターゲティング条件の演算子"""
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    GT = "gt"
    LT = "lt"
    CONTAINS = "contains"


class Combinator(str, Enum):
    """ルールグループの結合子"""
    AND = "and"
    OR = "or"


# ============================================================================
# ターゲティングルール
# ============================================================================


@dataclass(frozen=True)
class Condition:
    """訪問者コンテキストの1属性とリテラルを比較する条件"""
    attribute: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class RuleGroup:
    """子ルールを AND / OR で結合するノード"""
    combinator: Combinator
    children: Tuple["TargetingRule", ...]


TargetingRule = Union[Condition, RuleGroup]


def rule_from_dict(data: Dict[str, Any]) -> TargetingRule:
    """辞書からルール木を構築

    形式:
        {"attribute": "country", "operator": "in", "value": ["JP", "US"]}
        {"combinator": "or", "children": [...]}

    Raises:
        ConfigurationError: 形式が不正な場合
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Targeting rule must be a mapping, got {type(data).__name__}")

    if "combinator" in data or "children" in data:
        try:
            combinator = Combinator(str(data.get("combinator", "and")).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown combinator: {data.get('combinator')!r}")
        children = data.get("children")
        if not isinstance(children, list) or not children:
            raise ConfigurationError("Rule group must have a non-empty 'children' list")
        return RuleGroup(
            combinator=combinator,
            children=tuple(rule_from_dict(child) for child in children),
        )

    missing = [key for key in ("attribute", "operator", "value") if key not in data]
    if missing:
        raise ConfigurationError(f"Condition is missing fields: {', '.join(missing)}")

    try:
        operator = Operator(str(data["operator"]).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown operator: {data['operator']!r}")

    value = data["value"]
    if operator == Operator.IN:
        if not isinstance(value, (list, tuple)):
            raise ConfigurationError(
                f"Operator 'in' requires a list value (attribute={data['attribute']})"
            )
        value = tuple(value)

    return Condition(attribute=str(data["attribute"]), operator=operator, value=value)


def rule_to_dict(rule: TargetingRule) -> Dict[str, Any]:
    """ルール木を辞書に変換"""
    if isinstance(rule, RuleGroup):
        return {
            "combinator": rule.combinator.value,
            "children": [rule_to_dict(child) for child in rule.children],
        }
    value = list(rule.value) if isinstance(rule.value, tuple) else rule.value
    return {
        "attribute": rule.attribute,
        "operator": rule.operator.value,
        "value": value,
    }


# ============================================================================
# テスト・バリアント
# ============================================================================


@dataclass
class Variant:
    """バリアント

    固定配分では weight（0-100）を、バンディット配分では
    trials / successes / reward_sum の実績値を使用する。
    """

    id: str
    """バリアントID"""

    name: str = ""
    """表示名"""

    weight: int = 0
    """固定配分の重み（0-100）"""

    is_control: bool = False
    """コントロール群か"""

    # === バンディット統計 ===
    trials: int = 0
    """露出数"""

    successes: int = 0
    """コンバージョン数"""

    reward_sum: float = 0.0
    """報酬（売上）合計"""

    @property
    def reward_rate(self) -> float:
        """観測報酬率（successes / trials）"""
        if self.trials <= 0:
            return 0.0
        return self.successes / self.trials

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "weight": self.weight,
            "is_control": self.is_control,
            "trials": self.trials,
            "successes": self.successes,
            "reward_sum": self.reward_sum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            weight=_parse_weight(data.get("weight", 0)),
            is_control=bool(data.get("is_control", False)),
            trials=int(data.get("trials", 0)),
            successes=int(data.get("successes", 0)),
            reward_sum=float(data.get("reward_sum", 0.0)),
        )


@dataclass
class Test:
    """A/Bテスト定義

    テスト管理者（外部）が作成・編集する。running になった後は
    バンディット統計の更新（with_bandit_stats）以外は変更しない。
    状態遷移は新しい Test を返す（元のインスタンスは変更しない）。
    """
    __test__ = False

    id: str
    tenant_id: str
    name: str = ""
    status: TestStatus = TestStatus.DRAFT
    test_type: TestType = TestType.FIXED
    variants: List[Variant] = field(default_factory=list)
    targeting_rules: List[TargetingRule] = field(default_factory=list)
    allocation_mode: AllocationMode = AllocationMode.FIXED
    exploration_rate: float = 0.1
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    mutually_exclusive: bool = False
    """他テストとのアトリビューション競合時に優先されるか"""
    attribution_extension_days: int = 0
    """アトリビューション期間の延長日数"""

    @property
    def control_variant(self) -> Optional[Variant]:
        """コントロールバリアント（複数ある場合は最初のもの）"""
        for variant in self.variants:
            if variant.is_control:
                return variant
        return None

    @property
    def variant_ids(self) -> List[str]:
        return [v.id for v in self.variants]

    @property
    def is_running(self) -> bool:
        return self.status == TestStatus.RUNNING

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def with_status(self, status: TestStatus, **changes: Any) -> "Test":
        """ステータスを変更したコピーを返す"""
        return replace(self, status=status, **changes)

    def with_variants(self, variants: List[Variant]) -> "Test":
        """バリアントを差し替えたコピーを返す（テスト管理者による編集用）"""
        return replace(self, variants=list(variants))

    def with_bandit_stats(self, snapshot: Dict[str, Tuple[int, int, float]]) -> "Test":
        """バンディット統計を更新したコピーを返す

        Args:
            snapshot: variant_id -> (trials, successes, reward_sum)
        """
        updated = []
        for variant in self.variants:
            if variant.id in snapshot:
                trials, successes, reward_sum = snapshot[variant.id]
                updated.append(
                    replace(variant, trials=trials, successes=successes, reward_sum=reward_sum)
                )
            else:
                updated.append(variant)
        return replace(self, variants=updated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "status": self.status.value,
            "test_type": self.test_type.value,
            "variants": [v.to_dict() for v in self.variants],
            "targeting_rules": [rule_to_dict(r) for r in self.targeting_rules],
            "allocation_mode": self.allocation_mode.value,
            "exploration_rate": self.exploration_rate,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "mutually_exclusive": self.mutually_exclusive,
            "attribution_extension_days": self.attribution_extension_days,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_exploration_rate: float = 0.1) -> "Test":
        """辞書からテストを構築

        Args:
            data: テスト定義の辞書
            default_exploration_rate: exploration_rate が無い場合の探索率

        Raises:
            ConfigurationError: 列挙値やルール木が不正な場合
        """
        try:
            status = TestStatus(data.get("status", TestStatus.DRAFT.value))
            test_type = TestType(data.get("test_type", TestType.FIXED.value))
            default_mode = (
                AllocationMode.BANDIT if test_type == TestType.BANDIT else AllocationMode.FIXED
            )
            allocation_mode = AllocationMode(
                data.get("allocation_mode", default_mode.value)
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid test definition '{data.get('id')}': {e}")

        return cls(
            id=str(data["id"]),
            tenant_id=str(data.get("tenant_id", "default")),
            name=data.get("name", ""),
            status=status,
            test_type=test_type,
            variants=[Variant.from_dict(v) for v in data.get("variants") or []],
            targeting_rules=[rule_from_dict(r) for r in data.get("targeting_rules") or []],
            allocation_mode=allocation_mode,
            exploration_rate=float(data.get("exploration_rate", default_exploration_rate)),
            start_at=_parse_datetime(data.get("start_at")),
            end_at=_parse_datetime(data.get("end_at")),
            mutually_exclusive=bool(data.get("mutually_exclusive", False)),
            attribution_extension_days=int(data.get("attribution_extension_days", 0)),
        )


# ============================================================================
# 訪問者コンテキスト・割り当て
# ============================================================================


_CONTEXT_FIELDS = (
    "country",
    "region",
    "city",
    "device_type",
    "browser",
    "os",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "referrer",
    "landing_page",
)


@dataclass
class VisitorContext:
    """訪問者コンテキスト

    未設定の属性は None のまま保持する。ターゲティング評価では
    None を「条件不成立」として扱い、既定値で補完しない。
    """

    visitor_id: str
    tenant_id: str

    # === 地域・デバイス ===
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None

    # === 流入元 ===
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None

    attributes: Dict[str, Any] = field(default_factory=dict)
    """任意のカスタム属性"""

    forced_variants: Dict[str, str] = field(default_factory=dict)
    """強制割り当て（test_id -> variant_id）。クエリパラメータ・事前設定 cookie 由来"""

    # === 除外フラグ ===
    is_bot: bool = False
    is_internal: bool = False

    def get_attribute(self, name: str) -> Optional[Any]:
        """属性値を取得（存在しない場合は None）"""
        if name in _CONTEXT_FIELDS:
            return getattr(self, name)
        if name in ("visitor_id", "tenant_id"):
            return getattr(self, name)
        return self.attributes.get(name)

    def to_attributes(self) -> Dict[str, Any]:
        """値のある属性だけを平坦化した辞書に変換"""
        flattened = {
            name: getattr(self, name)
            for name in _CONTEXT_FIELDS
            if getattr(self, name) is not None
        }
        for key, value in self.attributes.items():
            if value is not None and key not in flattened:
                flattened[key] = value
        flattened["visitor_id"] = self.visitor_id
        flattened["tenant_id"] = self.tenant_id
        return flattened


@dataclass(frozen=True)
class Assignment:
    """(tenant, test, visitor) に対する固定割り当て

    テスト終了まで、または明示的に解除されるまで変わらない。
    cookie / セッション層とのやり取りは to_dict / from_dict のみを境界とする。
    """

    tenant_id: str
    test_id: str
    visitor_id: str
    variant_id: str
    bucket: int
    assigned_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None
    forced: bool = False

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.tenant_id, self.test_id, self.visitor_id)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return (now or datetime.now()) < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "test_id": self.test_id,
            "visitor_id": self.visitor_id,
            "variant_id": self.variant_id,
            "bucket": self.bucket,
            "assigned_at": self.assigned_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assignment":
        return cls(
            tenant_id=str(data["tenant_id"]),
            test_id=str(data["test_id"]),
            visitor_id=str(data["visitor_id"]),
            variant_id=str(data["variant_id"]),
            bucket=int(data["bucket"]),
            assigned_at=_parse_datetime(data.get("assigned_at")) or datetime.now(),
            expires_at=_parse_datetime(data.get("expires_at")),
            forced=bool(data.get("forced", False)),
        )


class AssignmentStatus(str, Enum):
    """割り当て結果の種類"""
    ASSIGNED = "assigned"
    NOT_ASSIGNED = "not_assigned"  # 除外（エラーではない）
    FORCED = "forced"              # 強制割り当て（永続化しない）
    FAIL_OPEN = "fail_open"        # 障害時にコントロールへフォールバック


@dataclass(frozen=True)
class AssignmentResult:
    """割り当て結果"""
    status: AssignmentStatus
    assignment: Optional[Assignment] = None
    reason: str = ""

    @property
    def variant_id(self) -> Optional[str]:
        return self.assignment.variant_id if self.assignment else None

    @property
    def is_assigned(self) -> bool:
        return self.assignment is not None

    @classmethod
    def not_assigned(cls, reason: str) -> "AssignmentResult":
        return cls(status=AssignmentStatus.NOT_ASSIGNED, assignment=None, reason=reason)


# ============================================================================
# イベント
# ============================================================================


class EventType(str, Enum):
    """イベントの種類"""
    EXPOSURE = "exposure"
    CONVERSION = "conversion"
    REVENUE = "revenue"
    CUSTOM = "custom"


class AttributionStatus(str, Enum):
    """アトリビューション判定

    ATTRIBUTED 以外のコンバージョンは記録されるが統計からは除外される。
    """
    PENDING = "pending"
    ATTRIBUTED = "attributed"
    NO_ASSIGNMENT = "no_assignment"
    VARIANT_MISMATCH = "variant_mismatch"
    OUTSIDE_WINDOW = "outside_window"


@dataclass(frozen=True)
class Event:
    """追記専用のイベント

    dedup_key はコンバージョン・売上イベントの冪等性キー
    （例: 注文ID + テストID）。Webhook の再送で二重計上しない。
    """

    event_type: EventType
    tenant_id: str
    test_id: str
    visitor_id: str
    variant_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.now)
    value: float = 0.0
    dedup_key: Optional[str] = None
    name: Optional[str] = None
    attribution_status: AttributionStatus = AttributionStatus.PENDING
    id: UUID = field(default_factory=uuid4)

    @property
    def is_conversion(self) -> bool:
        """コンバージョン系イベント（conversion / revenue）か"""
        return self.event_type in (EventType.CONVERSION, EventType.REVENUE)

    @property
    def effective_dedup_key(self) -> str:
        """重複排除キー（未指定の場合はイベントID）"""
        return self.dedup_key or str(self.id)

    def with_attribution(
        self,
        status: AttributionStatus,
        variant_id: Optional[str] = None,
    ) -> "Event":
        """アトリビューション判定を反映したコピーを返す"""
        return replace(
            self,
            attribution_status=status,
            variant_id=variant_id if variant_id is not None else self.variant_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type.value,
            "tenant_id": self.tenant_id,
            "test_id": self.test_id,
            "visitor_id": self.visitor_id,
            "variant_id": self.variant_id,
            "occurred_at": self.occurred_at.isoformat(),
            "value": self.value,
            "dedup_key": self.dedup_key,
            "name": self.name,
            "attribution_status": self.attribution_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            id=UUID(str(data["id"])) if data.get("id") else uuid4(),
            event_type=EventType(data["event_type"]),
            tenant_id=str(data["tenant_id"]),
            test_id=str(data["test_id"]),
            visitor_id=str(data["visitor_id"]),
            variant_id=data.get("variant_id"),
            occurred_at=_parse_datetime(data.get("occurred_at")) or datetime.now(),
            value=float(data.get("value") or 0.0),
            dedup_key=data.get("dedup_key"),
            name=data.get("name"),
            attribution_status=AttributionStatus(
                data.get("attribution_status", AttributionStatus.PENDING.value)
            ),
        )


@dataclass(frozen=True)
class Order:
    """注文（LTV分析の入力）"""
    order_id: str
    customer_id: str
    order_date: datetime
    amount_cents: int


def _parse_weight(value: Any) -> Any:
    """整数値の float（50.0 など）は int に変換。それ以外はそのまま返し検証に委ねる"""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    """ISO8601 文字列または datetime を datetime に変換"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
