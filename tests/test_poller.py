import asyncio
from datetime import datetime, timedelta, UTC

import pytest

from jobs.config import P2PSettings
from jobs.poller import ControllerState, PriceController, store_factory_for
from pipelines.errors import NoValidPrice, UpstreamUnavailable
from pipelines.model import PricePoint, TradeDirection
from storage.db import PriceHistoryStore, connect

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


class FakeFetcher:
    """Scripted fetcher; each call waits for ``release`` unless ``auto`` is set."""

    def __init__(self, *results, auto=True):
        self.results = list(results)
        self.calls: list[tuple[TradeDirection, tuple[str, ...]]] = []
        self.auto = auto
        self.release = asyncio.Event()

    async def __call__(self, direction, methods):
        self.calls.append((direction, methods))
        if not self.auto:
            await self.release.wait()
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(direction)
        return PricePoint.observed(result, direction, NOW)


@pytest.fixture()
def conn(tmp_path):
    connection = connect(tmp_path / "prices.duckdb")
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture()
def factory(conn):
    return store_factory_for(conn, P2PSettings())


def _controller(factory, fetcher, interval=3600.0):
    return PriceController(factory, fetcher=fetcher, interval=interval, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_bind_loads_series_and_fetches_immediately(factory):
    factory(TradeDirection.BUY).merge(
        PricePoint.observed(35.0, TradeDirection.BUY, NOW - timedelta(days=1)), now=NOW
    )
    fetcher = FakeFetcher(36.0)
    controller = _controller(factory, fetcher)

    controller.bind("BUY", "Banesco,PagoMovil")
    assert [d.price for d in controller.daily_prices] == [35.0]

    await controller.wait_for_pending()

    assert fetcher.calls == [(TradeDirection.BUY, ("Banesco", "PagoMovil"))]
    assert controller.current_price == 36.0
    assert [d.price for d in controller.daily_prices] == [35.0, 36.0]
    assert controller.state is ControllerState.IDLE
    assert controller.error is None
    assert controller.variation.is_positive is True
    await controller.close()


@pytest.mark.asyncio
async def test_overlapping_cycle_is_noop(factory):
    fetcher = FakeFetcher(36.0, auto=False)
    controller = _controller(factory, fetcher)
    controller.bind(TradeDirection.BUY)
    await asyncio.sleep(0)
    assert controller.loading is True

    assert await controller.refresh() is False
    assert len(fetcher.calls) == 1

    fetcher.release.set()
    await controller.wait_for_pending()

    assert len(factory(TradeDirection.BUY).raw_points()) == 1
    assert await controller.refresh() is True
    assert len(fetcher.calls) == 2
    await controller.close()


@pytest.mark.asyncio
async def test_failure_keeps_previous_price(factory):
    fetcher = FakeFetcher(36.0, NoValidPrice("No valid prices"), UpstreamUnavailable("HTTP 503"))
    controller = _controller(factory, fetcher)
    controller.bind(TradeDirection.BUY)
    await controller.wait_for_pending()

    await controller.refresh()

    assert controller.current_price == 36.0
    assert controller.error == "No valid prices"
    assert controller.state is ControllerState.ERROR
    assert len(factory(TradeDirection.BUY).raw_points()) == 1

    await controller.refresh()
    assert controller.error == "HTTP 503"
    await controller.close()


@pytest.mark.asyncio
async def test_unexpected_error_is_surfaced_not_raised(factory):
    controller = _controller(factory, FakeFetcher(RuntimeError("boom")))
    controller.bind(TradeDirection.SELL)
    await controller.wait_for_pending()

    assert controller.error == "boom"
    assert controller.current_price is None
    await controller.close()


@pytest.mark.asyncio
async def test_same_price_today_skips_merge(factory):
    def later(direction):
        return PricePoint.observed(37.0, direction, NOW + timedelta(seconds=1))

    controller = _controller(factory, FakeFetcher(36.0, 36.0, later))
    controller.bind(TradeDirection.BUY)
    await controller.wait_for_pending()

    await controller.refresh()
    assert len(factory(TradeDirection.BUY).raw_points()) == 1

    await controller.refresh()
    assert len(factory(TradeDirection.BUY).raw_points()) == 2
    assert [d.price for d in controller.daily_prices] == [37.0]
    assert controller.current_price == 37.0
    await controller.close()


@pytest.mark.asyncio
async def test_close_during_fetch_leaves_controller_idle(factory):
    fetcher = FakeFetcher(36.0, auto=False)
    controller = _controller(factory, fetcher)
    controller.bind(TradeDirection.BUY)
    await asyncio.sleep(0)
    assert controller.loading is True

    await controller.close()
    fetcher.release.set()
    await controller.wait_for_pending()

    assert controller.loading is False
    assert controller.state is ControllerState.IDLE
    assert controller.binding is None
    assert controller.current_price is None
    assert factory(TradeDirection.BUY).raw_points() == []


class CountingStore(PriceHistoryStore):
    reads = 0

    def _read_payload(self):
        CountingStore.reads += 1
        return super()._read_payload()


@pytest.mark.asyncio
async def test_cycle_reads_history_once(conn):
    CountingStore.reads = 0
    controller = _controller(lambda direction: CountingStore(conn, direction), FakeFetcher(36.0))
    controller.bind(TradeDirection.BUY)
    reads_at_bind = CountingStore.reads

    await controller.wait_for_pending()

    assert CountingStore.reads - reads_at_bind == 1
    assert [d.price for d in controller.daily_prices] == [36.0]
    assert [d.price for d in CountingStore(conn, TradeDirection.BUY).load()] == [36.0]
    await controller.close()


@pytest.mark.asyncio
async def test_rebind_exposes_other_direction_series(factory):
    factory(TradeDirection.SELL).merge(
        PricePoint.observed(34.0, TradeDirection.SELL, NOW - timedelta(days=2)), now=NOW
    )
    fetcher = FakeFetcher(lambda direction: PricePoint.observed(36.0, direction, NOW), auto=False)
    controller = _controller(factory, fetcher)

    controller.bind(TradeDirection.BUY)
    assert controller.daily_prices == []

    controller.bind(TradeDirection.SELL)
    assert [d.price for d in controller.daily_prices] == [34.0]
    await controller.close()
    fetcher.release.set()
    await controller.wait_for_pending()


@pytest.mark.asyncio
async def test_stale_cycle_cannot_write_after_rebind(factory):
    gate = asyncio.Event()
    calls = []

    async def fetcher(direction, methods):
        calls.append(direction)
        if direction is TradeDirection.BUY:
            await gate.wait()
            return PricePoint.observed(99.0, direction, NOW)
        return PricePoint.observed(35.0, direction, NOW)

    controller = _controller(factory, fetcher)
    controller.bind(TradeDirection.BUY)
    await asyncio.sleep(0)

    controller.bind(TradeDirection.SELL)
    await asyncio.sleep(0)
    gate.set()
    await controller.wait_for_pending()

    assert calls == [TradeDirection.BUY, TradeDirection.SELL]
    assert controller.current_price == 35.0
    assert [d.price for d in controller.daily_prices] == [35.0]
    assert factory(TradeDirection.BUY).raw_points() == []
    assert controller.binding.trade_direction is TradeDirection.SELL
    await controller.close()


@pytest.mark.asyncio
async def test_rebind_resets_guard(factory):
    fetcher = FakeFetcher(36.0, auto=False)
    controller = _controller(factory, fetcher)
    controller.bind(TradeDirection.BUY, ["Banesco"])
    await asyncio.sleep(0)
    assert controller.binding.in_flight is True

    controller.bind(TradeDirection.BUY, ["PagoMovil"])
    await asyncio.sleep(0)

    assert fetcher.calls == [
        (TradeDirection.BUY, ("Banesco",)),
        (TradeDirection.BUY, ("PagoMovil",)),
    ]
    await controller.close()
    fetcher.release.set()
    await controller.wait_for_pending()


@pytest.mark.asyncio
async def test_timer_ticks_and_skips_while_in_flight(factory):
    fetcher = FakeFetcher(36.0)
    controller = _controller(factory, fetcher, interval=0.01)
    controller.bind(TradeDirection.BUY)

    await asyncio.sleep(0.055)
    await controller.close()
    await controller.wait_for_pending()
    ticks = len(fetcher.calls)
    assert ticks >= 3

    await asyncio.sleep(0.03)
    assert len(fetcher.calls) == ticks


@pytest.mark.asyncio
async def test_tick_during_slow_fetch_does_not_queue(factory):
    fetcher = FakeFetcher(36.0, auto=False)
    controller = _controller(factory, fetcher, interval=0.01)
    controller.bind(TradeDirection.BUY)

    await asyncio.sleep(0.05)
    assert len(fetcher.calls) == 1

    await controller.close()
    fetcher.release.set()
    await controller.wait_for_pending()
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_refresh_requires_binding(factory):
    controller = _controller(factory, FakeFetcher(36.0))

    with pytest.raises(RuntimeError):
        await controller.refresh()


def test_bind_requires_running_loop(factory):
    controller = _controller(factory, FakeFetcher(36.0))

    with pytest.raises(RuntimeError):
        controller.bind(TradeDirection.BUY)
    assert controller.binding is None


@pytest.mark.asyncio
async def test_independent_controllers_do_not_interfere(factory):
    buy = _controller(factory, FakeFetcher(36.0, auto=False))
    sell = _controller(factory, FakeFetcher(35.0))

    buy.bind(TradeDirection.BUY)
    sell.bind(TradeDirection.SELL)
    await sell.wait_for_pending()

    assert sell.current_price == 35.0
    assert buy.loading is True
    assert buy.current_price is None
    await buy.close()
    await sell.close()
    buy._fetcher.release.set()
    await buy.wait_for_pending()


@pytest.mark.asyncio
async def test_snapshot(factory):
    controller = _controller(factory, FakeFetcher(36.0))
    controller.bind(TradeDirection.SELL, ("BANK",))
    await controller.wait_for_pending()

    view = controller.snapshot()

    assert view.trade_direction is TradeDirection.SELL
    assert view.payment_methods == ("BANK",)
    assert view.current_price == 36.0
    assert view.loading is False
    assert isinstance(factory(TradeDirection.SELL), PriceHistoryStore)
    await controller.close()
