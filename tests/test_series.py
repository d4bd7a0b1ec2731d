import pytest

from conftest import STEP, SYMBOL, T0, FakeSource, make_candles, seed_prices
from emascan.core.models import PricePoint
from emascan.ingestion.fetch_data import PriceSourceError
from emascan.processing.series import PriceSeriesAssembler


def _strictly_increasing(points):
    ts = [p.t for p in points]
    return all(a < b for a, b in zip(ts, ts[1:]))


@pytest.mark.asyncio
async def test_cold_start_uses_history_only(store, cfg):
    src = FakeSource(candles=make_candles([float(i) for i in range(100)]))
    series = await PriceSeriesAssembler(store, src, SYMBOL, cfg).assemble(100)

    assert series.stored_count == 0
    assert series.historical_count == 100
    assert series.prices == [float(i) for i in range(100)]
    start_s, end_s, gran = src.history_calls[0]
    assert gran == cfg.granularity_s
    assert (end_s - start_s) // gran == 100


@pytest.mark.asyncio
async def test_deficit_prepends_only_older_candles(store, cfg):
    # 5 stored points starting at T0 + 40 steps
    stored_start = T0 + 40 * STEP
    await seed_prices(store, [50, 51, 52, 53, 54], start_t=stored_start)
    # candles cover steps 10..49, so steps 40..49 overlap the stored window
    src = FakeSource(candles=make_candles([float(i) for i in range(10, 50)], start_t=T0 + 10 * STEP))

    series = await PriceSeriesAssembler(store, src, SYMBOL, cfg).assemble()

    assert series.stored_count == 5
    assert series.historical_count == 30  # steps 10..39
    assert len(series) == 35
    assert all(p.t < stored_start for p in series.points[:30])
    assert series.prices[-5:] == [50.0, 51.0, 52.0, 53.0, 54.0]
    assert _strictly_increasing(series.points)
    # asked for deficit + surplus
    start_s, end_s, gran = src.history_calls[0]
    assert (end_s - start_s) // gran == (cfg.slow_period - 5) + cfg.backfill_surplus


@pytest.mark.asyncio
async def test_enough_stored_skips_history(store, cfg):
    await seed_prices(store, [float(i) for i in range(30)])
    src = FakeSource()
    series = await PriceSeriesAssembler(store, src, SYMBOL, cfg).assemble()

    assert src.history_calls == []
    assert series.stored_count == 30
    assert series.historical_count == 0
    assert len(series) >= series.stored_count


@pytest.mark.asyncio
async def test_stored_window_is_capped(store, cfg):
    await seed_prices(store, [float(i) for i in range(70)])
    series = await PriceSeriesAssembler(store, FakeSource(), SYMBOL, cfg).assemble()
    assert series.stored_count == cfg.stored_lookback
    assert series.prices[0] == 20.0
    assert series.prices[-1] == 69.0


@pytest.mark.asyncio
async def test_history_failure_is_an_empty_contribution(store, cfg):
    await seed_prices(store, [1, 2, 3])
    src = FakeSource(fail_history=PriceSourceError("Coinbase API error: 503"))
    series = await PriceSeriesAssembler(store, src, SYMBOL, cfg).assemble()

    assert series.prices == [1.0, 2.0, 3.0]
    assert series.historical_count == 0
    assert series.stored_count == 3


@pytest.mark.asyncio
async def test_duplicate_timestamps_collapse(store, cfg):
    await store.append_price(PricePoint(t=T0, price=1.0))
    await store.append_price(PricePoint(t=T0, price=1.5))
    await store.append_price(PricePoint(t=T0 + STEP, price=2.0))
    series = await PriceSeriesAssembler(store, FakeSource(), SYMBOL, cfg).assemble()

    assert [p.t for p in series.points] == [T0, T0 + STEP]
    assert _strictly_increasing(series.points)
