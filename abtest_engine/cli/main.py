"""
実験エンジン CLI エントリーポイント

テスト定義（YAML）の検証、バケットの確認、配分のシミュレーション、
PostgreSQL に記録された結果の集計をターミナルから行う。
"""

import sys
from collections import Counter
from typing import Optional

import click

from abtest_engine.analysis.results import ExperimentService
from abtest_engine.assignment.allocator import allocate
from abtest_engine.assignment.hasher import HASH_VERSION, bucket
from abtest_engine.config.engine_config import EngineConfig
from abtest_engine.config.test_loader import find_test, load_tests
from abtest_engine.db.connection import DatabaseConnection
from abtest_engine.db.store import ExperimentStore, PostgresExperimentStore
from abtest_engine.models.errors import ConfigurationError, PersistenceError
from abtest_engine.models.experiment import AllocationMode
from abtest_engine.cli.utils.output import echo_error, echo_json, echo_table, format_percent


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(
        self,
        store: Optional[ExperimentStore] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self._store = store
        self.db: Optional[DatabaseConnection] = None

    @property
    def store(self) -> ExperimentStore:
        """PostgresExperimentStore を遅延初期化（DATABASE_URL を使用）"""
        if self._store is None:
            try:
                self.db = DatabaseConnection()
            except ValueError as e:
                echo_error(f"データベースに接続できません: {e}")
                sys.exit(2)
            self._store = PostgresExperimentStore(self.db)
        return self._store

    def close(self) -> None:
        if self.db is not None:
            self.db.close()


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version="1.0.0", prog_name="abtest")
@pass_context
def abtest(ctx: CLIContext):
    """
    実験割り当て・統計推論エンジン CLI

    テスト定義の検証、割り当ての確認、結果の集計を行います。
    """
    pass


@abtest.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@pass_context
def validate(ctx: CLIContext, file: str):
    """テスト定義ファイルを検証する"""
    try:
        tests = load_tests(file, config=ctx.config)
    except ConfigurationError as e:
        echo_error(f"テスト定義が不正です: {e}")
        sys.exit(1)

    rows = []
    for test in tests:
        rows.append([
            test.id,
            test.status.value,
            test.allocation_mode.value,
            ", ".join(
                f"{v.id}{'*' if v.is_control else ''}={v.weight}" for v in test.variants
            ),
            len(test.targeting_rules),
        ])
    echo_table(["test_id", "status", "mode", "variants", "rules"], rows)
    click.echo(f"\n✓ {len(tests)} 件のテスト定義は有効です")


@abtest.command(name="bucket")
@click.argument("test_id")
@click.argument("visitor_id")
@click.option("--file", "file", type=click.Path(exists=True, dir_okay=False),
              help="テスト定義ファイル（指定するとバリアントも表示）")
@pass_context
def bucket_command(ctx: CLIContext, test_id: str, visitor_id: str, file: Optional[str]):
    """訪問者のバケット（0-99）を表示する"""
    value = bucket(test_id, visitor_id)
    click.echo(f"bucket: {value}")
    click.echo(f"hash: {HASH_VERSION}")

    if file:
        try:
            test = find_test(load_tests(file, config=ctx.config), test_id)
            click.echo(f"variant: {allocate(test, value)}")
        except ConfigurationError as e:
            echo_error(str(e))
            sys.exit(1)


@abtest.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.argument("test_id")
@click.option("--visitors", default=10000, show_default=True, help="シミュレーションする訪問者数")
@click.option("--json", "as_json", is_flag=True, help="JSON で出力")
@pass_context
def simulate(ctx: CLIContext, file: str, test_id: str, visitors: int, as_json: bool):
    """合成した訪問者IDで配分の偏りを確認する"""
    if visitors <= 0:
        echo_error("--visitors は正の整数で指定してください")
        sys.exit(2)

    try:
        test = find_test(load_tests(file, config=ctx.config), test_id)
        counts = Counter(
            allocate(test, bucket(test.id, f"visitor_{i}")) for i in range(visitors)
        )
    except ConfigurationError as e:
        echo_error(str(e))
        sys.exit(1)

    fixed = test.allocation_mode == AllocationMode.FIXED
    distribution = [
        {
            "variant_id": v.id,
            "count": counts.get(v.id, 0),
            "ratio": counts.get(v.id, 0) / visitors,
            "expected": v.weight / 100 if fixed else None,
        }
        for v in test.variants
    ]

    if as_json:
        echo_json({"test_id": test.id, "visitors": visitors, "distribution": distribution})
        return

    echo_table(
        ["variant", "count", "ratio", "expected"],
        [
            [
                d["variant_id"],
                d["count"],
                format_percent(d["ratio"]),
                format_percent(d["expected"]) if d["expected"] is not None else "-",
            ]
            for d in distribution
        ],
    )


@abtest.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.argument("test_id")
@click.option("--json", "as_json", is_flag=True, help="JSON で出力")
@pass_context
def results(ctx: CLIContext, file: str, test_id: str, as_json: bool):
    """記録済みの割り当て・イベントからテスト結果を集計する"""
    try:
        test = find_test(load_tests(file, validate=False, config=ctx.config), test_id)
    except ConfigurationError as e:
        echo_error(str(e))
        sys.exit(1)

    service = ExperimentService(ctx.store, ctx.config)
    try:
        test_results = service.get_test_results(test)
    except PersistenceError as e:
        echo_error(f"結果の集計に失敗しました: {e}")
        sys.exit(1)
    finally:
        service.close()
        ctx.close()

    if as_json:
        echo_json(test_results.to_dict())
        return

    click.echo(f"テスト: {test.id} ({test_results.status})\n")
    echo_table(
        ["variant", "visitors", "conversions", "cvr", "revenue/visitor"],
        [
            [
                f"{s.variant_id}{' (control)' if s.is_control else ''}",
                s.visitors,
                s.conversions,
                format_percent(s.conversion_rate),
                f"{s.revenue_per_visitor:.2f}",
            ]
            for s in test_results.variants
        ],
    )

    if test_results.comparisons:
        click.echo("")
        echo_table(
            ["variant", "metric", "lift", "p (approx)", "significant"],
            [
                [
                    c.variant_id,
                    c.metric,
                    "-" if c.insufficient_data else f"{c.relative_lift:+.1f}%",
                    "-" if c.p_value is None else f"{c.p_value.value:.4f}",
                    _significance_label(c),
                ]
                for c in test_results.comparisons
            ],
        )

    for ltv in test_results.ltv_comparisons:
        click.echo(f"\nLTV ({ltv.variant.variant_id}): {ltv.message}")

    click.echo(f"\n{test_results.recommendation}")


def _significance_label(comparison) -> str:
    if comparison.insufficient_data:
        return "insufficient data"
    return "yes" if comparison.is_significant else "no"


if __name__ == "__main__":
    abtest()
