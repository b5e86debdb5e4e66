"""Long-running job that polls the P2P price and keeps the local history fresh."""

from __future__ import annotations

import asyncio
import logging
import os
from functools import partial
from typing import Iterable

from jobs.config import P2PSettings, load_settings
from jobs.poller import PriceController, PriceView, store_factory_for
from pipelines.acquire import acquire_price
from pipelines.model import TradeDirection
from storage.db import connect

logger = logging.getLogger(__name__)


def _describe(view: PriceView) -> str:
    price = f"{view.current_price:.2f}" if view.current_price is not None else "n/a"
    direction = view.trade_direction.value if view.trade_direction else "?"
    line = f"{direction} price={price} days={len(view.daily_prices)}"
    if view.variation is not None:
        sign = "+" if view.variation.is_positive else ""
        line += f" change={sign}{view.variation.variation:.2f} ({sign}{view.variation.percentage}%)"
    if view.error:
        line += f" error='{view.error}'"
    return line


async def watch_async(
    trade_direction: TradeDirection,
    payment_methods: Iterable[str] = (),
    *,
    settings: P2PSettings | None = None,
    max_cycles: int | None = None,
) -> PriceView:
    """Bind a controller and report its view after every poll period."""

    settings = settings or load_settings()
    conn = connect(settings.db_path)
    controller = PriceController(
        store_factory_for(conn, settings),
        fetcher=partial(acquire_price, settings=settings),
        interval=settings.poll_interval,
    )
    try:
        controller.bind(trade_direction, payment_methods)
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            await controller.wait_for_pending()
            logger.info(_describe(controller.snapshot()))
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(settings.poll_interval)
        return controller.snapshot()
    finally:
        await controller.close()
        await controller.wait_for_pending()
        conn.close()


def main(
    trade_direction: TradeDirection,
    payment_methods: Iterable[str] = (),
    *,
    max_cycles: int | None = None,
) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    try:
        asyncio.run(watch_async(trade_direction, payment_methods, max_cycles=max_cycles))
    except KeyboardInterrupt:
        logger.info("Watch interrupted; timer stopped.")
    return 0


__all__ = ["watch_async", "main"]
