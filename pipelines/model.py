"""Canonical data model for P2P price observations and daily series."""

from __future__ import annotations

import math
from datetime import UTC, date as date_type, datetime
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipelines.errors import InvalidParameter

# Untrusted upstream order-book entry, never persisted.
RawListing = Mapping[str, Any]


class TradeDirection(str, Enum):
    """Side of the conversion being priced."""

    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, raw: str | TradeDirection | None) -> TradeDirection:
        if isinstance(raw, TradeDirection):
            return raw
        try:
            return cls((raw or "").strip().upper())
        except ValueError as exc:
            raise InvalidParameter(
                f"tradeDirection must be BUY or SELL (got {raw!r})"
            ) from exc


class PricePoint(BaseModel):
    """One aggregated price observed for a trade direction."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    date: str = Field(..., description="Calendar day (UTC) of the observation, YYYY-MM-DD.")
    price: float = Field(..., gt=0, description="Aggregated price, always positive.")
    timestamp: datetime = Field(..., description="Instant the price was aggregated.")
    trade_direction: TradeDirection = Field(..., alias="tradeDirection")

    @field_validator("date")
    @classmethod
    def check_date(cls, value: str) -> str:
        date_type.fromisoformat(value)
        return value

    @field_validator("price")
    @classmethod
    def check_finite(cls, value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise ValueError("price must be finite")
        return value

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @classmethod
    def observed(
        cls, price: float, trade_direction: TradeDirection, now: datetime | None = None
    ) -> PricePoint:
        timestamp = now or datetime.now(UTC)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        timestamp = timestamp.astimezone(UTC)
        return cls(
            date=timestamp.date().isoformat(),
            price=price,
            timestamp=timestamp,
            trade_direction=trade_direction,
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the upstream-facing camelCase field names."""

        return self.model_dump(mode="json", by_alias=True)


class DailyPrice(BaseModel):
    """The single representative price recorded for one calendar date."""

    model_config = ConfigDict(frozen=True)

    date: str
    price: float


class DailyVariation(BaseModel):
    """Change between the two most recent daily prices of a series."""

    model_config = ConfigDict(frozen=True)

    variation: float
    percentage: float
    is_positive: bool
