"""Export helpers for materialized daily price series."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Sequence

import duckdb

from pipelines.model import DailyPrice

EXPORT_TABLE = "daily_prices_export"
ALLOWED_FORMATS = {"csv", "parquet"}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _stage_daily_prices(conn: duckdb.DuckDBPyConnection, prices: Sequence[DailyPrice]) -> None:
    conn.execute(
        f'CREATE OR REPLACE TEMP TABLE {EXPORT_TABLE} ("date" DATE NOT NULL, price DOUBLE NOT NULL)'
    )
    if prices:
        conn.executemany(
            f"INSERT INTO {EXPORT_TABLE} VALUES (?, ?)",
            [(date.fromisoformat(entry.date), entry.price) for entry in prices],
        )


def export_daily_prices(
    conn: duckdb.DuckDBPyConnection,
    prices: Sequence[DailyPrice],
    destination: str | Path,
    *,
    fmt: str = "csv",
    include_header: bool = True,
) -> Path:
    """Write a daily series to CSV or Parquet using DuckDB's COPY command."""

    fmt = fmt.lower()
    if fmt not in ALLOWED_FORMATS:
        raise ValueError(f"Unsupported export format '{fmt}'.")

    dest_path = Path(destination)
    _ensure_parent(dest_path)
    _stage_daily_prices(conn, prices)
    sanitized_path = str(dest_path).replace("'", "''")
    if fmt == "csv":
        options = f"FORMAT CSV, HEADER {'TRUE' if include_header else 'FALSE'}"
    else:
        options = "FORMAT PARQUET"
    try:
        conn.execute(
            f'COPY (SELECT "date", price FROM {EXPORT_TABLE} ORDER BY "date")'
            f" TO '{sanitized_path}' ({options})"
        )
    finally:
        conn.execute(f"DROP TABLE IF EXISTS {EXPORT_TABLE}")
    return dest_path


__all__ = ["export_daily_prices", "ALLOWED_FORMATS"]
