"""Turn a P2P listings array into one representative price.

The rule is fixed: drop sponsored listings, keep the first three organic
ones in upstream order (best price first), and average the prices that
parse to a positive finite number.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from pipelines.errors import NoValidPrice
from pipelines.model import DailyPrice, DailyVariation, PricePoint, RawListing, TradeDirection

SAMPLE_SIZE = 3
SPONSORSHIP_FIELD = "privilegeType"

logger = logging.getLogger(__name__)


def is_sponsored(listing: Any) -> bool:
    if not isinstance(listing, Mapping):
        return False
    return listing.get(SPONSORSHIP_FIELD) is not None


def select_organic(listings: Iterable[RawListing], limit: int = SAMPLE_SIZE) -> list[RawListing]:
    organic: list[RawListing] = []
    for listing in listings:
        if is_sponsored(listing):
            continue
        organic.append(listing)
        if len(organic) == limit:
            break
    return organic


def parse_listing_price(listing: Any) -> float | None:
    """Return the listing's ``adv.price`` as a positive finite float, else ``None``."""

    if not isinstance(listing, Mapping):
        return None
    adv = listing.get("adv")
    if not isinstance(adv, Mapping):
        return None
    raw = adv.get("price")
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None

    if math.isnan(value) or math.isinf(value) or value <= 0:
        return None
    return value


def aggregate_price(
    listings: Sequence[RawListing],
    trade_direction: TradeDirection,
    *,
    now: datetime | None = None,
) -> PricePoint:
    """Average the valid prices of the first organic listings into a ``PricePoint``."""

    sample = select_organic(listings)
    prices = [price for price in map(parse_listing_price, sample) if price is not None]
    if not prices:
        logger.warning(
            "No valid prices in the first %s non-sponsored listings (%s candidates).",
            SAMPLE_SIZE,
            len(sample),
        )
        raise NoValidPrice(f"No valid prices found in first {SAMPLE_SIZE} non-sponsored listings")

    average = sum(prices) / len(prices)
    return PricePoint.observed(average, trade_direction, now)


def daily_variation(series: Sequence[DailyPrice]) -> DailyVariation | None:
    """Compare the last two daily prices of an ascending series."""

    if len(series) < 2:
        return None
    previous, latest = series[-2], series[-1]
    variation = latest.price - previous.price
    return DailyVariation(
        variation=variation,
        percentage=round(variation / previous.price * 100, 2),
        is_positive=variation >= 0,
    )


__all__ = [
    "aggregate_price",
    "daily_variation",
    "is_sponsored",
    "parse_listing_price",
    "select_organic",
    "SAMPLE_SIZE",
]
