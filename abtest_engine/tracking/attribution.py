# アトリビューション
"""
コンバージョンをテストに帰属させる

アトリビューション期間:
    テスト期間（end_at - start_at）+ attribution_extension_days
    終了日時の無いテストは default_attribution_window_days + 延長日数

判定基準:
    訪問者の最初の露出時刻 <= コンバージョン時刻 <= 最初の露出時刻 + 期間
    期間外のコンバージョンは記録されたまま統計から除外する（outside_window）。

複数テストの競合（merge_attributions）:
    1つのコンバージョンを複数テストが主張できる場合、
    - 排他（mutually_exclusive）テストの露出があれば、その中で最も新しい露出のテスト
    - なければ最も新しい露出のテスト
    - 同時刻は test_id の昇順で先のもの
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.models.experiment import (
    Assignment,
    AttributionStatus,
    Event,
    EventType,
    Test,
)


@dataclass
class AttributionReport:
    """attribute_events の結果"""
    attributed: List[Event] = field(default_factory=list)
    """期間内のコンバージョン（attribution_status = attributed）"""

    excluded: List[Event] = field(default_factory=list)
    """統計から除外したコンバージョン"""

    first_exposures: Dict[str, Event] = field(default_factory=dict)
    """visitor_id -> 最初の露出イベント"""


def attribution_window(test: Test, config: Optional[EngineConfig] = None) -> timedelta:
    """テストのアトリビューション期間を計算"""
    config = config or EngineConfig()
    extension = timedelta(days=test.attribution_extension_days)
    if test.start_at is not None and test.end_at is not None:
        return (test.end_at - test.start_at) + extension
    return timedelta(days=config.default_attribution_window_days) + extension


def first_exposures(events: Iterable[Event]) -> Dict[str, Event]:
    """訪問者ごとの最初の露出イベント（記録済みで割り当てと整合するもの）"""
    first: Dict[str, Event] = {}
    for event in events:
        if event.event_type != EventType.EXPOSURE:
            continue
        if event.attribution_status not in (
            AttributionStatus.ATTRIBUTED,
            AttributionStatus.PENDING,
        ):
            continue
        current = first.get(event.visitor_id)
        if current is None or event.occurred_at < current.occurred_at:
            first[event.visitor_id] = event
    return first


def attribute_events(
    test: Test,
    events: Sequence[Event],
    config: Optional[EngineConfig] = None,
    assignments: Optional[Dict[str, Assignment]] = None,
) -> AttributionReport:
    """テストのコンバージョンをアトリビューション期間で振り分ける

    Args:
        test: テスト定義
        events: テストのイベント（露出とコンバージョン）
        config: エンジン設定
        assignments: visitor_id -> 割り当て。露出イベントが無い訪問者は
            割り当て時刻を露出時刻とみなす

    Returns:
        AttributionReport
    """
    window = attribution_window(test, config)
    exposures = first_exposures(events)
    report = AttributionReport(first_exposures=exposures)

    for event in events:
        if not event.is_conversion:
            continue

        if event.attribution_status in (
            AttributionStatus.NO_ASSIGNMENT,
            AttributionStatus.VARIANT_MISMATCH,
            AttributionStatus.OUTSIDE_WINDOW,
        ):
            report.excluded.append(event)
            continue

        anchor = _exposure_time(event.visitor_id, exposures, assignments)
        if anchor is None or not (anchor <= event.occurred_at <= anchor + window):
            report.excluded.append(event.with_attribution(AttributionStatus.OUTSIDE_WINDOW))
            continue

        variant_id = event.variant_id
        if variant_id is None:
            exposure = exposures.get(event.visitor_id)
            if exposure is not None:
                variant_id = exposure.variant_id
            elif assignments and event.visitor_id in assignments:
                variant_id = assignments[event.visitor_id].variant_id
        report.attributed.append(
            event.with_attribution(AttributionStatus.ATTRIBUTED, variant_id)
        )

    return report


def merge_attributions(
    conversions: Sequence[Event],
    exposures: Sequence[Event],
    tests: Sequence[Test],
    config: Optional[EngineConfig] = None,
) -> Dict[UUID, str]:
    """複数テストが主張しうるコンバージョンの帰属先を決める

    Args:
        conversions: コンバージョン系イベント
        exposures: 露出イベント（複数テスト分）
        tests: 対象テスト
        config: エンジン設定

    Returns:
        コンバージョンのイベントID -> 帰属先 test_id
        （どのテストの期間にも入らないコンバージョンは含まない）
    """
    tests_by_id = {t.id: t for t in tests}
    windows = {t.id: attribution_window(t, config) for t in tests}

    # (tenant_id, visitor_id) -> test_id -> 露出時刻のリスト
    exposure_times: Dict[Tuple[str, str], Dict[str, List[datetime]]] = {}
    for exposure in exposures:
        if exposure.event_type != EventType.EXPOSURE or exposure.test_id not in tests_by_id:
            continue
        per_test = exposure_times.setdefault((exposure.tenant_id, exposure.visitor_id), {})
        per_test.setdefault(exposure.test_id, []).append(exposure.occurred_at)

    resolved: Dict[UUID, str] = {}
    for conversion in conversions:
        if not conversion.is_conversion:
            continue
        per_test = exposure_times.get((conversion.tenant_id, conversion.visitor_id), {})

        candidates = []
        for test_id, times in per_test.items():
            first = min(times)
            if not (first <= conversion.occurred_at <= first + windows[test_id]):
                continue
            latest = max(t for t in times if t <= conversion.occurred_at)
            candidates.append((test_id, latest))

        if not candidates:
            continue

        exclusive = [c for c in candidates if tests_by_id[c[0]].mutually_exclusive]
        pool = exclusive or candidates
        # 最も新しい露出、同時刻は test_id 昇順
        winner = max(sorted(pool), key=lambda c: c[1])
        resolved[conversion.id] = winner[0]

    return resolved


def _exposure_time(
    visitor_id: str,
    exposures: Dict[str, Event],
    assignments: Optional[Dict[str, Assignment]],
) -> Optional[datetime]:
    exposure = exposures.get(visitor_id)
    if exposure is not None:
        return exposure.occurred_at
    if assignments and visitor_id in assignments:
        return assignments[visitor_id].assigned_at
    return None
