"""FastAPI facade that acquires the current aggregated P2P price on demand."""

from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from jobs.config import parse_payment_methods
from pipelines.acquire import acquire_price
from pipelines.errors import InvalidParameter, PriceAcquisitionError
from pipelines.model import TradeDirection

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="P2P Price API", version="0.1.0")


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def _resolve_trade_direction(raw: str | None) -> TradeDirection:
    """Exact-match ``BUY``/``SELL``; a missing or empty value means ``BUY``."""

    if not raw:
        return TradeDirection.BUY
    try:
        return TradeDirection(raw)
    except ValueError as exc:
        raise InvalidParameter(f"tradeDirection must be BUY or SELL (got {raw!r})") from exc


@app.get("/price")
async def get_price(
    trade_direction: str | None = Query(
        None, alias="tradeDirection", description="BUY or SELL (default BUY)"
    ),
    payment_methods: str | None = Query(
        None, alias="paymentMethods", description="Comma-separated payment method keys"
    ),
) -> dict[str, Any]:
    try:
        direction = _resolve_trade_direction(trade_direction)
    except InvalidParameter as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        point = await acquire_price(direction, parse_payment_methods(payment_methods))
    except PriceAcquisitionError as exc:
        logger.error("Price acquisition failed for %s: %s", direction.value, exc)
        raise HTTPException(
            status_code=500, detail="Could not obtain a price from the listing service"
        ) from exc

    return point.to_wire()
