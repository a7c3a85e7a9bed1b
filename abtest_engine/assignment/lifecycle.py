# テストのライフサイクル管理
"""
状態遷移:
    draft → running ⇄ paused → completed
              └──────────────→ completed

遷移関数は新しい Test を返し、引数のテストは変更しない。
running への遷移時にテスト定義を検証し、不正な定義は ConfigurationError で拒否する。
"""

import logging
from datetime import datetime
from typing import Optional

from abtest_engine.assignment.allocator import validate_weights
from abtest_engine.assignment.targeting import validate_rules
from abtest_engine.models.errors import ConfigurationError, TestStateError
from abtest_engine.models.experiment import AllocationMode, Test, TestStatus


logger = logging.getLogger(__name__)


def validate_test(test: Test) -> None:
    """テスト定義を検証

    Raises:
        ConfigurationError: バリアント無し、コントロール無し、バリアントID重複、
            固定配分の重み不正、探索率の範囲外、ルール木の不正
    """
    if not test.variants:
        raise ConfigurationError(f"Test has no variants: test_id={test.id}")

    ids = [v.id for v in test.variants]
    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate variant ids: test_id={test.id}, variants={ids}")

    if test.control_variant is None:
        raise ConfigurationError(f"Test has no control variant: test_id={test.id}")

    if test.allocation_mode == AllocationMode.FIXED:
        validate_weights(test)
    elif not (0.0 <= test.exploration_rate <= 1.0):
        raise ConfigurationError(
            f"exploration_rate must be within 0.0-1.0: "
            f"test_id={test.id}, exploration_rate={test.exploration_rate}"
        )

    if test.start_at and test.end_at and test.end_at <= test.start_at:
        raise ConfigurationError(f"end_at must be after start_at: test_id={test.id}")

    if test.attribution_extension_days < 0:
        raise ConfigurationError(
            f"attribution_extension_days must not be negative: test_id={test.id}"
        )

    validate_rules(test.targeting_rules)


def activate_test(test: Test, now: Optional[datetime] = None) -> Test:
    """draft のテストを検証して running にする

    start_at が未設定の場合は現在時刻を設定する。

    Raises:
        TestStateError: draft でない場合
        ConfigurationError: テスト定義が不正な場合
    """
    if test.status != TestStatus.DRAFT:
        raise TestStateError(
            f"Cannot activate test in '{test.status.value}' status. "
            f"Only 'draft' tests can be activated."
        )
    validate_test(test)

    activated = test.with_status(TestStatus.RUNNING, start_at=test.start_at or now or datetime.now())
    logger.info(f"テスト開始: test_id={test.id}, variants={len(test.variants)}")
    return activated


def pause_test(test: Test) -> Test:
    """running のテストを一時停止

    Raises:
        TestStateError: running でない場合
    """
    if test.status != TestStatus.RUNNING:
        raise TestStateError(
            f"Cannot pause test in '{test.status.value}' status. "
            f"Only 'running' tests can be paused."
        )
    logger.info(f"テスト一時停止: test_id={test.id}")
    return test.with_status(TestStatus.PAUSED)


def resume_test(test: Test) -> Test:
    """一時停止中のテストを再開

    Raises:
        TestStateError: paused でない場合
    """
    if test.status != TestStatus.PAUSED:
        raise TestStateError(
            f"Cannot resume test in '{test.status.value}' status. "
            f"Only 'paused' tests can be resumed."
        )
    logger.info(f"テスト再開: test_id={test.id}")
    return test.with_status(TestStatus.RUNNING)


def complete_test(test: Test, now: Optional[datetime] = None) -> Test:
    """テストを完了する

    end_at が未設定の場合は現在時刻を設定する。

    Raises:
        TestStateError: running / paused 以外の場合
    """
    if test.status not in (TestStatus.RUNNING, TestStatus.PAUSED):
        raise TestStateError(
            f"Cannot complete test in '{test.status.value}' status. "
            f"Only 'running' or 'paused' tests can be completed."
        )
    logger.info(f"テスト完了: test_id={test.id}")
    return test.with_status(TestStatus.COMPLETED, end_at=test.end_at or now or datetime.now())
