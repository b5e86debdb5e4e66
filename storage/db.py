"""DuckDB persistence for the per-direction P2P price history.

Each trade direction owns one row in ``price_history`` whose payload is the
raw JSON array of every merged ``PricePoint`` still inside the retention
window. The one-price-per-day view is derived when the history is loaded.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, date as date_type, datetime, timedelta
from pathlib import Path
from typing import Any

import duckdb
from pydantic import ValidationError

from jobs.config import DEFAULT_ASSET, DEFAULT_FIAT, DEFAULT_RETENTION_DAYS
from pipelines.errors import StorageCorrupt
from pipelines.model import DailyPrice, PricePoint, TradeDirection

DB_ENV_VAR = "P2P_PRICES_DB_PATH"
DEFAULT_DB_PATH = Path("data/p2p_prices.duckdb")

PRICE_HISTORY_TABLE = "price_history"

logger = logging.getLogger(__name__)


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_price_history_table(conn)
    return conn


def ensure_price_history_table(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {PRICE_HISTORY_TABLE} (
            storage_key TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TIMESTAMP
        )
        """
    )


def storage_key_for(
    trade_direction: TradeDirection,
    *,
    asset: str = DEFAULT_ASSET,
    fiat: str = DEFAULT_FIAT,
) -> str:
    """Fixed storage key for a direction, e.g. ``p2p_usdt_ves_prices_buy``."""

    return f"p2p_{asset.lower()}_{fiat.lower()}_prices_{trade_direction.value.lower()}"


def _decode_points(payload: Any, storage_key: str) -> list[PricePoint]:
    try:
        raw = json.loads(payload) if isinstance(payload, str) else payload
    except ValueError as exc:
        raise StorageCorrupt("history payload is not valid JSON") from exc
    if not isinstance(raw, list):
        raise StorageCorrupt("history payload is not a list")
    points: list[PricePoint] = []
    skipped = 0
    for item in raw:
        try:
            points.append(PricePoint.model_validate(item))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.warning("Skipped %s invalid entries in price history %s.", skipped, storage_key)
    return points


def materialize_daily(points: list[PricePoint]) -> list[DailyPrice]:
    """Collapse raw points to one price per date (latest timestamp wins), ascending."""

    latest: dict[str, PricePoint] = {}
    for point in points:
        existing = latest.get(point.date)
        if existing is None or point.timestamp > existing.timestamp:
            latest[point.date] = point
    return [
        DailyPrice(date=day, price=latest[day].price)
        for day in sorted(latest)
    ]


class PriceHistoryStore:
    """Retention-bounded price history for a single trade direction."""

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        trade_direction: TradeDirection,
        *,
        storage_key: str | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self.conn = conn
        self.trade_direction = trade_direction
        self.storage_key = storage_key or storage_key_for(trade_direction)
        self.retention = timedelta(days=retention_days)

    def _read_payload(self) -> Any:
        row = self.conn.execute(
            f"SELECT payload FROM {PRICE_HISTORY_TABLE} WHERE storage_key = ?",
            [self.storage_key],
        ).fetchone()
        return row[0] if row else None

    def raw_points(self) -> list[PricePoint]:
        """Return the persisted, non-deduplicated history (empty if absent or corrupt)."""

        payload = self._read_payload()
        if payload is None:
            return []
        try:
            return _decode_points(payload, self.storage_key)
        except StorageCorrupt as exc:
            logger.warning("Ignoring corrupt price history under %s: %s", self.storage_key, exc)
            return []

    def load(self) -> list[DailyPrice]:
        return materialize_daily(self.raw_points())

    def today_price(self, today: date_type | str) -> DailyPrice | None:
        day = today if isinstance(today, str) else today.isoformat()
        for entry in self.load():
            if entry.date == day:
                return entry
        return None

    def merge(
        self,
        point: PricePoint,
        *,
        now: datetime | None = None,
        history: list[PricePoint] | None = None,
    ) -> list[PricePoint]:
        """Append ``point``, prune entries older than the retention window and persist.

        ``history`` may carry the raw points the caller already read, which
        avoids decoding the payload twice. Returns the persisted collection.
        """

        if point.trade_direction != self.trade_direction:
            raise ValueError(
                f"Cannot merge a {point.trade_direction.value} point into the "
                f"{self.trade_direction.value} history"
            )
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        cutoff = now - self.retention

        points = list(history) if history is not None else self.raw_points()
        points.append(point)
        kept = [p for p in points if p.timestamp >= cutoff]
        pruned = len(points) - len(kept)
        if pruned:
            logger.debug("Pruned %s expired points from %s.", pruned, self.storage_key)

        payload = json.dumps([p.to_wire() for p in kept])
        self.conn.execute(
            f"INSERT OR REPLACE INTO {PRICE_HISTORY_TABLE} (storage_key, payload, updated_at)"
            " VALUES (?, ?, ?)",
            [self.storage_key, payload, now.astimezone(UTC).replace(tzinfo=None)],
        )
        return kept


__all__ = [
    "connect",
    "ensure_price_history_table",
    "get_database_path",
    "materialize_daily",
    "storage_key_for",
    "PriceHistoryStore",
    "PRICE_HISTORY_TABLE",
]
