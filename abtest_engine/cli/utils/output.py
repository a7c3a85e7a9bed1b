"""Output formatting helpers for CLI."""

import json
from datetime import datetime
from typing import Any, Iterable, List, Sequence

import click


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Format a simple table with padded columns."""
    rows_list: List[List[str]] = [list(map(str, row)) for row in rows]
    widths = [len(str(h)) for h in headers]
    for row in rows_list:
        for idx, cell in enumerate(row):
            if idx >= len(widths):
                widths.append(len(cell))
            else:
                widths[idx] = max(widths[idx], len(cell))

    header_line = " ".join(str(h).ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-" * len(header_line)
    body_lines = [
        " ".join(cell.ljust(widths[i]) for i, cell in enumerate(row))
        for row in rows_list
    ]
    return "\n".join([header_line, separator] + body_lines)


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    """Echo a simple table."""
    click.echo(format_table(headers, rows))


def format_percent(ratio: float, digits: int = 2) -> str:
    """0.1234 -> '12.34%'"""
    return f"{ratio * 100:.{digits}f}%"


def echo_json(data: Any) -> None:
    """Echo JSON with UTF-8 characters preserved (datetimes as ISO 8601)."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=_json_default))


def echo_error(message: str) -> None:
    click.echo(f"[エラー] {message}", err=True)


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
