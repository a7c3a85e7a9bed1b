# 永続化コラボレーター
"""
割り当て・イベント・注文の永続化インターフェースと実装

書き込みはすべて冪等:
- put_assignment_if_absent: 有効な割り当てがあれば既存を返す（insert-or-ignore）
- append_events: イベントID、およびコンバージョン系イベントの
  (tenant_id, test_id, dedup_key) が既存なら無視する

どちらも同じ引数でのリトライが安全なので、PersistenceError を受け取った
呼び出し側はそのまま再実行してよい。

実装:
    InMemoryExperimentStore: スレッドセーフなメモリ実装（テスト・単一プロセス用）
    PostgresExperimentStore: psycopg2 実装（INSERT ... ON CONFLICT）
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

import psycopg2

from abtest_engine.db.connection import DatabaseConnection
from abtest_engine.models.errors import PersistenceError
from abtest_engine.models.experiment import (
    Assignment,
    AttributionStatus,
    Event,
    EventType,
    Order,
)


logger = logging.getLogger(__name__)


class ExperimentStore(ABC):
    """永続化コラボレーターのインターフェース

    すべてのメソッドは失敗時に PersistenceError を送出する。
    """

    @abstractmethod
    def get_assignment(
        self, tenant_id: str, test_id: str, visitor_id: str
    ) -> Optional[Assignment]:
        """割り当てを取得（存在しない場合は None）"""

    @abstractmethod
    def put_assignment_if_absent(self, assignment: Assignment) -> Assignment:
        """有効な割り当てが無ければ保存し、保存済みの割り当てを返す

        競合した場合は先に保存された割り当てが返る。
        """

    @abstractmethod
    def expire_assignments(
        self,
        tenant_id: str,
        test_id: str,
        expires_at: datetime,
        visitor_id: Optional[str] = None,
    ) -> int:
        """割り当てに有効期限を記録（visitor_id 未指定時はテスト全体）

        Returns:
            更新件数
        """

    @abstractmethod
    def read_assignments(self, tenant_id: str, test_id: str) -> List[Assignment]:
        """テストの全割り当てを取得"""

    @abstractmethod
    def append_events(self, events: Sequence[Event]) -> int:
        """イベントを追記

        Returns:
            新規に書き込まれた件数（重複は含まない）
        """

    @abstractmethod
    def read_events(
        self,
        tenant_id: str,
        test_id: str,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Event]:
        """テストのイベントを発生時刻順に取得"""

    @abstractmethod
    def read_orders(
        self,
        customer_ids: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Order]:
        """顧客の注文を注文日時順に取得"""


def _event_dedup_identity(event: Event) -> Optional[Tuple[str, str, str]]:
    """ストアレベルの重複判定キー（コンバージョン系イベントのみ）"""
    if event.is_conversion and event.dedup_key:
        return (event.tenant_id, event.test_id, event.dedup_key)
    return None


class InMemoryExperimentStore(ExperimentStore):
    """スレッドセーフなメモリ実装

    使用例:
        store = InMemoryExperimentStore()
        store.add_orders([Order("o1", "c1", datetime(2024, 1, 5), 5000)])
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._assignments: Dict[Tuple[str, str, str], Assignment] = {}
        self._events: List[Event] = []
        self._event_ids: Set[UUID] = set()
        self._dedup_keys: Set[Tuple[str, str, str]] = set()
        self._orders: List[Order] = []

    def get_assignment(
        self, tenant_id: str, test_id: str, visitor_id: str
    ) -> Optional[Assignment]:
        with self._lock:
            return self._assignments.get((tenant_id, test_id, visitor_id))

    def put_assignment_if_absent(self, assignment: Assignment) -> Assignment:
        with self._lock:
            existing = self._assignments.get(assignment.key)
            if existing is not None and existing.is_active(assignment.assigned_at):
                return existing
            self._assignments[assignment.key] = assignment
            return assignment

    def expire_assignments(
        self,
        tenant_id: str,
        test_id: str,
        expires_at: datetime,
        visitor_id: Optional[str] = None,
    ) -> int:
        updated = 0
        with self._lock:
            for key, assignment in list(self._assignments.items()):
                if key[0] != tenant_id or key[1] != test_id:
                    continue
                if visitor_id is not None and key[2] != visitor_id:
                    continue
                if assignment.expires_at is not None:
                    continue
                self._assignments[key] = replace(assignment, expires_at=expires_at)
                updated += 1
        return updated

    def read_assignments(self, tenant_id: str, test_id: str) -> List[Assignment]:
        with self._lock:
            return [
                a for key, a in self._assignments.items()
                if key[0] == tenant_id and key[1] == test_id
            ]

    def append_events(self, events: Sequence[Event]) -> int:
        written = 0
        with self._lock:
            for event in events:
                if event.id in self._event_ids:
                    continue
                identity = _event_dedup_identity(event)
                if identity is not None:
                    if identity in self._dedup_keys:
                        continue
                    self._dedup_keys.add(identity)
                self._event_ids.add(event.id)
                self._events.append(event)
                written += 1
        return written

    def read_events(
        self,
        tenant_id: str,
        test_id: str,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Event]:
        types = set(event_types) if event_types is not None else None
        with self._lock:
            selected = [
                e for e in self._events
                if e.tenant_id == tenant_id
                and e.test_id == test_id
                and (types is None or e.event_type in types)
                and (since is None or e.occurred_at >= since)
                and (until is None or e.occurred_at <= until)
            ]
        return sorted(selected, key=lambda e: e.occurred_at)

    def add_orders(self, orders: Iterable[Order]) -> None:
        """注文を登録（注文データは外部システムが所有するため書き込みはこのメモリ実装のみ）"""
        with self._lock:
            self._orders.extend(orders)

    def read_orders(
        self,
        customer_ids: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Order]:
        ids = set(customer_ids)
        with self._lock:
            selected = [
                o for o in self._orders
                if o.customer_id in ids
                and (start is None or o.order_date >= start)
                and (end is None or o.order_date <= end)
            ]
        return sorted(selected, key=lambda o: o.order_date)


# ============================================================================
# PostgreSQL 実装
# ============================================================================


_ASSIGNMENT_COLUMNS = (
    "tenant_id, test_id, visitor_id, variant_id, bucket, assigned_at, expires_at, forced"
)

_EVENT_COLUMNS = (
    "id, event_type, tenant_id, test_id, visitor_id, variant_id, "
    "occurred_at, value, dedup_key, name, attribution_status"
)


class PostgresExperimentStore(ExperimentStore):
    """psycopg2 による永続化実装

    テーブル定義は abtest_engine/db/schema.sql を参照。
    psycopg2.Error はすべて PersistenceError に変換して送出する。

    使用例:
        db = DatabaseConnection()
        store = PostgresExperimentStore(db)
        assignment = store.get_assignment("tenant_1", "t1", "v1")
    """

    def __init__(self, db_connection: DatabaseConnection):
        self.db = db_connection

    def get_assignment(
        self, tenant_id: str, test_id: str, visitor_id: str
    ) -> Optional[Assignment]:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_ASSIGNMENT_COLUMNS}
                    FROM ab_assignments
                    WHERE tenant_id = %s AND test_id = %s AND visitor_id = %s
                    """,
                    (tenant_id, test_id, visitor_id),
                )
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise PersistenceError(
                f"Failed to read assignment: test_id={test_id}, visitor_id={visitor_id}: {e}"
            ) from e
        return self._row_to_assignment(row) if row else None

    def put_assignment_if_absent(self, assignment: Assignment) -> Assignment:
        # 期限切れの割り当てだけは上書きする
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO ab_assignments ({_ASSIGNMENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (tenant_id, test_id, visitor_id) DO UPDATE
                    SET variant_id = EXCLUDED.variant_id,
                        bucket = EXCLUDED.bucket,
                        assigned_at = EXCLUDED.assigned_at,
                        expires_at = EXCLUDED.expires_at,
                        forced = EXCLUDED.forced
                    WHERE ab_assignments.expires_at IS NOT NULL
                      AND ab_assignments.expires_at <= EXCLUDED.assigned_at
                    """,
                    (
                        assignment.tenant_id,
                        assignment.test_id,
                        assignment.visitor_id,
                        assignment.variant_id,
                        assignment.bucket,
                        assignment.assigned_at,
                        assignment.expires_at,
                        assignment.forced,
                    ),
                )
                cur.execute(
                    f"""
                    SELECT {_ASSIGNMENT_COLUMNS}
                    FROM ab_assignments
                    WHERE tenant_id = %s AND test_id = %s AND visitor_id = %s
                    """,
                    assignment.key,
                )
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise PersistenceError(
                f"Failed to store assignment: test_id={assignment.test_id}, "
                f"visitor_id={assignment.visitor_id}: {e}"
            ) from e

        if row is None:
            raise PersistenceError(
                f"Assignment not found after insert: test_id={assignment.test_id}, "
                f"visitor_id={assignment.visitor_id}"
            )
        return self._row_to_assignment(row)

    def expire_assignments(
        self,
        tenant_id: str,
        test_id: str,
        expires_at: datetime,
        visitor_id: Optional[str] = None,
    ) -> int:
        query = """
            UPDATE ab_assignments
            SET expires_at = %s
            WHERE tenant_id = %s AND test_id = %s AND expires_at IS NULL
        """
        params: List = [expires_at, tenant_id, test_id]
        if visitor_id is not None:
            query += " AND visitor_id = %s"
            params.append(visitor_id)

        try:
            with self.db.get_cursor() as cur:
                cur.execute(query, tuple(params))
                return cur.rowcount
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to expire assignments: test_id={test_id}: {e}") from e

    def read_assignments(self, tenant_id: str, test_id: str) -> List[Assignment]:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_ASSIGNMENT_COLUMNS}
                    FROM ab_assignments
                    WHERE tenant_id = %s AND test_id = %s
                    """,
                    (tenant_id, test_id),
                )
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to read assignments: test_id={test_id}: {e}") from e
        return [self._row_to_assignment(row) for row in rows]

    def append_events(self, events: Sequence[Event]) -> int:
        if not events:
            return 0

        written = 0
        try:
            with self.db.get_cursor() as cur:
                for event in events:
                    cur.execute(
                        f"""
                        INSERT INTO ab_events ({_EVENT_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT DO NOTHING
                        """,
                        (
                            str(event.id),
                            event.event_type.value,
                            event.tenant_id,
                            event.test_id,
                            event.visitor_id,
                            event.variant_id,
                            event.occurred_at,
                            event.value,
                            # 露出・カスタムイベントは dedup 一意制約の対象外
                            event.dedup_key if event.is_conversion else None,
                            event.name,
                            event.attribution_status.value,
                        ),
                    )
                    written += cur.rowcount
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to append events: count={len(events)}: {e}") from e

        logger.debug(f"イベント書き込み: requested={len(events)}, written={written}")
        return written

    def read_events(
        self,
        tenant_id: str,
        test_id: str,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Event]:
        query = f"""
            SELECT {_EVENT_COLUMNS}
            FROM ab_events
            WHERE tenant_id = %s AND test_id = %s
        """
        params: List = [tenant_id, test_id]
        if event_types is not None:
            query += " AND event_type = ANY(%s)"
            params.append([t.value for t in event_types])
        if since is not None:
            query += " AND occurred_at >= %s"
            params.append(since)
        if until is not None:
            query += " AND occurred_at <= %s"
            params.append(until)
        query += " ORDER BY occurred_at"

        try:
            with self.db.get_cursor() as cur:
                cur.execute(query, tuple(params))
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to read events: test_id={test_id}: {e}") from e
        return [self._row_to_event(row) for row in rows]

    def read_orders(
        self,
        customer_ids: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Order]:
        ids = list(customer_ids)
        if not ids:
            return []

        query = """
            SELECT order_id, customer_id, order_date, amount_cents
            FROM orders
            WHERE customer_id = ANY(%s)
        """
        params: List = [ids]
        if start is not None:
            query += " AND order_date >= %s"
            params.append(start)
        if end is not None:
            query += " AND order_date <= %s"
            params.append(end)
        query += " ORDER BY order_date"

        try:
            with self.db.get_cursor() as cur:
                cur.execute(query, tuple(params))
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to read orders: customers={len(ids)}: {e}") from e
        return [
            Order(
                order_id=str(row[0]),
                customer_id=str(row[1]),
                order_date=row[2],
                amount_cents=int(row[3]),
            )
            for row in rows
        ]

    def _row_to_assignment(self, row: tuple) -> Assignment:
        return Assignment(
            tenant_id=row[0],
            test_id=row[1],
            visitor_id=row[2],
            variant_id=row[3],
            bucket=int(row[4]),
            assigned_at=row[5],
            expires_at=row[6],
            forced=bool(row[7]),
        )

    def _row_to_event(self, row: tuple) -> Event:
        return Event(
            id=row[0] if isinstance(row[0], UUID) else UUID(str(row[0])),
            event_type=EventType(row[1]),
            tenant_id=row[2],
            test_id=row[3],
            visitor_id=row[4],
            variant_id=row[5],
            occurred_at=row[6],
            value=float(row[7] or 0.0),
            dedup_key=row[8],
            name=row[9],
            attribution_status=AttributionStatus(row[10]),
        )
