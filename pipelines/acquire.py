"""One complete acquisition: listing search followed by aggregation."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from jobs.config import P2PSettings, load_settings
from pipelines.aggregate import aggregate_price
from pipelines.model import PricePoint, TradeDirection
from pipelines.sources.binance_p2p import fetch_listings


async def acquire_price(
    trade_direction: TradeDirection,
    payment_methods: Iterable[str] = (),
    *,
    settings: P2PSettings | None = None,
    now: datetime | None = None,
) -> PricePoint:
    """Fetch listings and aggregate them, raising ``PriceAcquisitionError`` on failure."""

    settings = settings or load_settings()
    listings = await fetch_listings(trade_direction, tuple(payment_methods), settings=settings)
    return aggregate_price(listings, trade_direction, now=now)


__all__ = ["acquire_price"]
