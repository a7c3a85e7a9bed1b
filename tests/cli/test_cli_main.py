import json
from datetime import datetime

import pytest
from click.testing import CliRunner

from abtest_engine.assignment.hasher import bucket
from abtest_engine.cli.main import CLIContext, abtest
from abtest_engine.db.store import InMemoryExperimentStore
from abtest_engine.models.experiment import Assignment, Event, EventType


TESTS_YAML = """
tests:
  - id: checkout_button
    tenant_id: shop_1
    status: running
    start_at: "2024-01-01T00:00:00"
    variants:
      - {id: control, weight: 50, is_control: true}
      - {id: green, weight: 50}
    targeting_rules:
      - {attribute: country, operator: eq, value: JP}
  - id: hero_image
    tenant_id: shop_1
    status: draft
    variants:
      - {id: control, weight: 20, is_control: true}
      - {id: lifestyle, weight: 80}
"""


@pytest.fixture
def tests_file(tmp_path):
    path = tmp_path / "tests.yaml"
    path.write_text(TESTS_YAML, encoding="utf-8")
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


def test_validate_lists_tests(runner, tests_file):
    result = runner.invoke(abtest, ["validate", tests_file])

    assert result.exit_code == 0
    assert "checkout_button" in result.output
    assert "control*=50, green=50" in result.output
    assert "2 件のテスト定義は有効です" in result.output


def test_validate_reports_invalid_weights(runner, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(
        "tests:\n  - id: t1\n    variants:\n"
        "      - {id: control, weight: 70, is_control: true}\n"
        "      - {id: b, weight: 70}\n",
        encoding="utf-8",
    )

    result = runner.invoke(abtest, ["validate", str(path)])

    assert result.exit_code == 1
    assert "[エラー] テスト定義が不正です" in result.output


def test_bucket_matches_hasher(runner):
    result = runner.invoke(abtest, ["bucket", "checkout_button", "visitor-123"])

    assert result.exit_code == 0
    assert f"bucket: {bucket('checkout_button', 'visitor-123')}" in result.output
    assert "hash: " in result.output


def test_bucket_with_variant(runner, tests_file):
    value = bucket("hero_image", "visitor-123")
    expected = "control" if value < 20 else "lifestyle"

    result = runner.invoke(abtest, ["bucket", "hero_image", "visitor-123", "--file", tests_file])

    assert result.exit_code == 0
    assert f"variant: {expected}" in result.output


def test_bucket_unknown_test(runner, tests_file):
    result = runner.invoke(abtest, ["bucket", "missing", "v1", "--file", tests_file])

    assert result.exit_code == 1
    assert "テストが見つかりません" in result.output


def test_simulate_json_output(runner, tests_file):
    result = runner.invoke(
        abtest, ["simulate", tests_file, "hero_image", "--visitors", "20000", "--json"]
    )

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["visitors"] == 20000
    by_variant = {d["variant_id"]: d for d in data["distribution"]}
    assert sum(d["count"] for d in data["distribution"]) == 20000
    assert by_variant["lifestyle"]["expected"] == 0.8
    assert abs(by_variant["lifestyle"]["ratio"] - 0.8) < 0.02


def test_simulate_table_output(runner, tests_file):
    result = runner.invoke(abtest, ["simulate", tests_file, "checkout_button", "--visitors", "1000"])

    assert result.exit_code == 0
    assert "50.00%" in result.output


def test_simulate_rejects_non_positive_visitors(runner, tests_file):
    result = runner.invoke(abtest, ["simulate", tests_file, "checkout_button", "--visitors", "0"])

    assert result.exit_code == 2


def test_results_from_store(runner, tests_file):
    store = InMemoryExperimentStore()
    for i in range(6):
        visitor_id = f"v{i}"
        variant_id = "control" if i % 2 == 0 else "green"
        store.put_assignment_if_absent(Assignment(
            "shop_1", "checkout_button", visitor_id, variant_id, i, datetime(2024, 1, 2)
        ))
        store.append_events([Event(
            EventType.EXPOSURE, "shop_1", "checkout_button", visitor_id, variant_id,
            occurred_at=datetime(2024, 1, 2),
        )])

    result = runner.invoke(
        abtest,
        ["results", tests_file, "checkout_button", "--json"],
        obj=CLIContext(store=store),
    )

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["test_id"] == "checkout_button"
    assert [v["visitors"] for v in data["variants"]] == [3, 3]
    assert data["recommendation"].startswith("No statistically significant difference")


def test_results_table_output(runner, tests_file):
    result = runner.invoke(
        abtest,
        ["results", tests_file, "checkout_button"],
        obj=CLIContext(store=InMemoryExperimentStore()),
    )

    assert result.exit_code == 0
    assert "テスト: checkout_button (running)" in result.output
    assert "No data collected yet" in result.output


def test_results_without_database_url(runner, tests_file, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    result = runner.invoke(abtest, ["results", tests_file, "checkout_button"])

    assert result.exit_code == 2
    assert "データベースに接続できません" in result.output
