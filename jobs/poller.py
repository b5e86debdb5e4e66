"""Polling controller that keeps the P2P price series fresh.

A controller services one binding at a time: a trade direction plus a
payment-method filter. Binding loads the stored series, fires an immediate
fetch cycle and starts a fixed-period timer. Each binding object carries its
own in-flight flag, so rebinding resets the guard, and cycles compare their
captured binding with the current one before touching the store or the view.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable

import duckdb

from jobs.config import DEFAULT_POLL_INTERVAL_SECONDS, P2PSettings, parse_payment_methods
from pipelines.acquire import acquire_price
from pipelines.aggregate import daily_variation
from pipelines.errors import PriceAcquisitionError
from pipelines.model import DailyPrice, DailyVariation, PricePoint, TradeDirection
from storage.db import PriceHistoryStore, materialize_daily, storage_key_for

Fetcher = Callable[[TradeDirection, tuple[str, ...]], Awaitable[PricePoint]]
StoreFactory = Callable[[TradeDirection], PriceHistoryStore]

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    ERROR = "error"


@dataclass(eq=False)
class Binding:
    trade_direction: TradeDirection
    payment_methods: tuple[str, ...]
    store: PriceHistoryStore
    in_flight: bool = False


@dataclass(frozen=True)
class PriceView:
    """Read-only snapshot handed to presentation code."""

    trade_direction: TradeDirection | None
    payment_methods: tuple[str, ...]
    current_price: float | None
    daily_prices: list[DailyPrice] = field(default_factory=list)
    loading: bool = False
    error: str | None = None
    state: ControllerState = ControllerState.IDLE
    variation: DailyVariation | None = None


def store_factory_for(conn: duckdb.DuckDBPyConnection, settings: P2PSettings) -> StoreFactory:
    def factory(trade_direction: TradeDirection) -> PriceHistoryStore:
        return PriceHistoryStore(
            conn,
            trade_direction,
            storage_key=storage_key_for(trade_direction, asset=settings.asset, fiat=settings.fiat),
            retention_days=settings.retention_days,
        )

    return factory


class PriceController:
    """Owns the refresh cadence, the re-entrancy guard and the exposed price state."""

    def __init__(
        self,
        store_factory: StoreFactory,
        *,
        fetcher: Fetcher | None = None,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store_factory = store_factory
        self._fetcher: Fetcher = fetcher or acquire_price
        self.interval = interval
        self._clock = clock or (lambda: datetime.now(UTC))
        self._binding: Binding | None = None
        self._timer: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

        self.current_price: float | None = None
        self.daily_prices: list[DailyPrice] = []
        self.error: str | None = None
        self.state = ControllerState.IDLE

    @property
    def binding(self) -> Binding | None:
        return self._binding

    @property
    def loading(self) -> bool:
        return self.state is ControllerState.FETCHING

    @property
    def variation(self) -> DailyVariation | None:
        return daily_variation(self.daily_prices)

    def snapshot(self) -> PriceView:
        binding = self._binding
        return PriceView(
            trade_direction=binding.trade_direction if binding else None,
            payment_methods=binding.payment_methods if binding else tuple(),
            current_price=self.current_price,
            daily_prices=list(self.daily_prices),
            loading=self.loading,
            error=self.error,
            state=self.state,
            variation=self.variation,
        )

    def bind(
        self,
        trade_direction: TradeDirection | str,
        payment_methods: Iterable[str] | str | None = (),
    ) -> Binding:
        """Switch to a new binding and start polling it.

        Must be called from a running event loop.
        """

        loop = asyncio.get_running_loop()
        direction = TradeDirection.parse(trade_direction)
        methods = parse_payment_methods(payment_methods)

        self._stop_timer()
        binding = Binding(direction, methods, self._store_factory(direction))
        self._binding = binding
        logger.info("Bound to %s (payTypes=%s).", direction.value, ",".join(methods) or "any")

        self.daily_prices = binding.store.load()
        self.current_price = None
        self.error = None
        self.state = ControllerState.IDLE

        self._spawn(binding)
        self._timer = loop.create_task(self._run_timer(binding))
        return binding

    async def refresh(self) -> bool:
        """Run one fetch cycle now; returns ``False`` if one was already in flight."""

        binding = self._binding
        if binding is None:
            raise RuntimeError("PriceController.refresh() called before bind()")
        return await self._run_cycle(binding)

    async def close(self) -> None:
        timer = self._timer
        self._stop_timer()
        self._binding = None
        # in-flight cycles of the old binding no longer update the state
        self.state = ControllerState.IDLE
        if timer is not None:
            try:
                await timer
            except asyncio.CancelledError:
                pass

    async def wait_for_pending(self) -> None:
        """Wait until every spawned fetch cycle has completed."""

        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _spawn(self, binding: Binding) -> None:
        task = asyncio.get_running_loop().create_task(self._run_cycle(binding))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_timer(self, binding: Binding) -> None:
        while binding is self._binding:
            await asyncio.sleep(self.interval)
            if binding is not self._binding:
                break
            if binding.in_flight:
                logger.debug("Tick skipped; a fetch is already in flight.")
                continue
            self._spawn(binding)

    async def _run_cycle(self, binding: Binding) -> bool:
        if binding is not self._binding or binding.in_flight:
            return False

        binding.in_flight = True
        self.state = ControllerState.FETCHING
        self.error = None
        try:
            point = await self._fetcher(binding.trade_direction, binding.payment_methods)
            self._apply(binding, point)
        except PriceAcquisitionError as exc:
            self._fail(binding, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error during %s fetch cycle.", binding.trade_direction.value)
            self._fail(binding, str(exc) or exc.__class__.__name__)
        finally:
            binding.in_flight = False
        return True

    def _apply(self, binding: Binding, point: PricePoint) -> None:
        if binding is not self._binding:
            logger.info(
                "Discarding %s price %.4f from a replaced binding.",
                binding.trade_direction.value,
                point.price,
            )
            return

        now = self._clock()
        today = now.astimezone(UTC).date().isoformat()
        history = binding.store.raw_points()
        recorded = next((d for d in materialize_daily(history) if d.date == today), None)
        if recorded is None or recorded.price != point.price:
            kept = binding.store.merge(point, now=now, history=history)
            self.daily_prices = materialize_daily(kept)

        self.current_price = point.price
        self.state = ControllerState.IDLE
        logger.info("%s price updated: %.4f", binding.trade_direction.value, point.price)

    def _fail(self, binding: Binding, message: str) -> None:
        if binding is not self._binding:
            return
        logger.warning("%s fetch cycle failed: %s", binding.trade_direction.value, message)
        self.error = message
        self.state = ControllerState.ERROR


__all__ = [
    "Binding",
    "ControllerState",
    "PriceController",
    "PriceView",
    "store_factory_for",
]
