"""Binance P2P advertisement search client.

Sends the fixed-shape search request for one trade direction and returns the
validated listings array. Every failure is raised as a typed acquisition
error so that callers can turn it into "no price this cycle".
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import httpx

from jobs.config import P2PSettings, load_settings
from pipelines.common import fetch_json
from pipelines.errors import InvalidUpstreamResponse, UpstreamUnavailable
from pipelines.model import RawListing, TradeDirection

# Binance reports success either as the string "000000" or as integer 0.
SUCCESS_CODES: tuple[Any, ...] = ("000000", 0)

_CLASSIFIES = ("mass", "profession", "fiat_trade")

logger = logging.getLogger(__name__)


def build_search_body(
    trade_direction: TradeDirection,
    payment_methods: Iterable[str],
    settings: P2PSettings,
) -> dict[str, Any]:
    return {
        "fiat": settings.fiat,
        "page": 1,
        "rows": settings.rows,
        "tradeType": trade_direction.value,
        "asset": settings.asset,
        "countries": [],
        "additionalKycVerifyFilter": 0,
        "classifies": list(_CLASSIFIES),
        "filterType": "tradable",
        "followed": False,
        "payTypes": list(payment_methods),
        "periods": [],
        "proMerchantAds": False,
        "publisherType": None,
        "shieldMerchantAds": False,
        "tradedWith": False,
    }


def _is_success_code(code: Any) -> bool:
    # bool is an int subclass; False must not pass for 0
    if isinstance(code, bool):
        return False
    return any(code == sentinel and type(code) is type(sentinel) for sentinel in SUCCESS_CODES)


def validate_envelope(payload: Any) -> list[RawListing]:
    """Check the response envelope and return its listings array."""

    if not isinstance(payload, Mapping) or not payload:
        raise InvalidUpstreamResponse("Empty or malformed response envelope")

    code = payload.get("code")
    if not _is_success_code(code):
        message = payload.get("message") or payload.get("msg")
        raise InvalidUpstreamResponse(f"Upstream returned error code {code!r}: {message}")

    listings = payload.get("data")
    if not isinstance(listings, list) or not listings:
        raise InvalidUpstreamResponse("No listings array found or listings array is empty")

    return listings


async def fetch_listings(
    trade_direction: TradeDirection,
    payment_methods: Iterable[str] = (),
    *,
    settings: P2PSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[RawListing]:
    """Fetch the first page of P2P listings for a direction and payment-method filter."""

    settings = settings or load_settings()
    body = build_search_body(trade_direction, payment_methods, settings)

    try:
        payload = await fetch_json(
            settings.upstream_url,
            method="POST",
            headers={"content-type": "application/json"},
            json=body,
            timeout=settings.timeout,
            attempts=settings.upstream_attempts,
            transport=transport,
        )
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else "?"
        logger.warning(
            "P2P search failed for %s (payTypes=%s) status=%s.",
            trade_direction.value,
            body["payTypes"],
            status,
        )
        raise UpstreamUnavailable(f"Listing service responded with HTTP {status}") from exc
    except httpx.HTTPError as exc:
        logger.warning("P2P search transport error for %s: %s", trade_direction.value, exc)
        raise UpstreamUnavailable(f"Listing service unreachable: {exc}") from exc
    except ValueError as exc:
        logger.warning("P2P search returned a non-JSON body for %s.", trade_direction.value)
        raise InvalidUpstreamResponse("Listing service returned a non-JSON body") from exc

    try:
        return validate_envelope(payload)
    except InvalidUpstreamResponse as exc:
        logger.warning("P2P search for %s rejected: %s", trade_direction.value, exc)
        raise


__all__ = ["fetch_listings", "build_search_body", "validate_envelope", "SUCCESS_CODES"]
