import asyncio
from dataclasses import replace

import httpx
import pytest

from conftest import STEP, SYMBOL, T0, FakeSource, seed_prices
from emascan.app.scanner import ScanOrchestrator
from emascan.app.scheduler import Scheduler, ScannerService, describe_run_state
from emascan.core.models import Origin, Outcome, ScannerRunState
from emascan.execution.notifier import WebhookNotifier
from emascan.ingestion.fetch_data import PriceSourceError
from emascan.utils.persist import JsonlStore


async def _wait_for(pred, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _scheduler(store, cfg, source=None):
    orch = ScanOrchestrator(SYMBOL, cfg, source or FakeSource(), store)
    return Scheduler(orch, store, cfg)


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_is_safe(store, cfg):
    sch = _scheduler(store, cfg)
    assert await sch.stop() is False  # stopped -> no-op

    task = await sch.start()
    assert isinstance(task, asyncio.Task)
    assert await sch.start() is None  # already running
    await _wait_for(lambda: sch.state.scan_count >= 1)  # first scan runs right away

    assert await sch.stop() is True
    assert not sch.running
    assert await sch.stop() is False

    persisted = await store.load_run_state()
    assert persisted.running is False and persisted.scan_count == 1
    assert persisted.next_scan_at is None


@pytest.mark.asyncio
async def test_failed_tick_does_not_stop_the_loop(store, cfg):
    fast_cfg = replace(cfg, scan_interval_ms=10)
    src = FakeSource(prices=[1.0, 2.0], fail_current=PriceSourceError("Coinbase API error: 502"))
    sch = _scheduler(store, fast_cfg, src)

    await sch.start()
    await _wait_for(lambda: sch.state.scan_count >= 2)
    await sch.stop()

    scans = await store.query_scans()
    outcomes = [s.outcome for s in scans]
    assert outcomes.count(Outcome.ERROR) == 1
    assert Outcome.SUCCESS in outcomes
    assert all(s.origin is Origin.AUTOMATIC for s in scans)


@pytest.mark.asyncio
async def test_scan_now_runs_outside_the_schedule(store, cfg):
    sch = _scheduler(store, cfg, FakeSource(prices=[42.0]))
    res = await sch.scan_now()

    assert res.success and res.origin is Origin.MANUAL
    assert not sch.running
    st = await store.load_run_state()
    assert st.scan_count == 1 and st.last_scan_at is not None and st.running is False


@pytest.mark.asyncio
async def test_restart_gives_a_new_loop(store, cfg):
    sch = _scheduler(store, cfg)
    first = await sch.start()
    second = await sch.restart()
    assert second is not None and second is not first
    assert first.cancelled() or first.done()
    assert sch.running
    await sch.stop()


@pytest.mark.asyncio
async def test_restore_keeps_counters_but_not_running_flag(store, cfg):
    await store.save_run_state(ScannerRunState(symbol=SYMBOL, running=True, started_at=T0,
                                               next_scan_at=T0 + 1, scan_count=9))
    sch = _scheduler(store, cfg)
    st = await sch.restore()
    assert st.scan_count == 9
    assert st.running is False and st.next_scan_at is None


def test_status_view_countdown_and_uptime():
    st = ScannerRunState(symbol=SYMBOL, running=True, started_at=T0, last_scan_at=T0,
                         next_scan_at=T0 + 900_000, scan_count=1)
    view = describe_run_state(st, now_ms=T0 + 300_000)
    assert view["status"] == "running"
    assert view["next_scan_in_s"] == 600
    assert view["uptime_s"] == 300

    st.running = False
    view = describe_run_state(st, now_ms=T0 + 300_000)
    assert view["status"] == "stopped"
    assert view["next_scan_in_s"] is None and view["uptime_s"] is None


@pytest.mark.asyncio
async def test_service_builds_one_scheduler_per_symbol(tmp_path, cfg):
    multi = replace(cfg, symbols=("SOL-USD", "ETH-USD"))
    svc = ScannerService(multi, source=FakeSource(prices=[1.0, 2.0]),
                         store_factory=lambda sym: JsonlStore(sym, base_dir=tmp_path))

    assert svc.symbols == ["SOL-USD", "ETH-USD"]
    assert svc.notifier is None  # no webhook configured
    res = await svc.scan_now("eth-usd")
    assert res.symbol == "ETH-USD"
    assert len(await svc.store("ETH-USD").query_scans()) == 1
    assert await svc.store("SOL-USD").query_scans() == []
    assert [v["scan_count"] for v in svc.status()] == [0, 1]

    with pytest.raises(KeyError):
        svc.scheduler("BTC-USD")


@pytest.mark.asyncio
async def test_manual_scan_from_another_process_keeps_the_schedule(tmp_path, cfg):
    store = JsonlStore(SYMBOL, base_dir=tmp_path)
    await store.save_run_state(ScannerRunState(symbol=SYMBOL, running=True, started_at=T0,
                                               next_scan_at=T0 + 2, scan_count=5))

    # what `emascan scan` does while a daemon owns the loop
    svc = ScannerService(cfg, source=FakeSource(prices=[3.0]),
                         store_factory=lambda sym: JsonlStore(sym, base_dir=tmp_path))
    await svc.restore()
    res = await svc.scan_now()

    assert res.success
    st = await store.load_run_state()
    assert st.running is True
    assert st.started_at == T0 and st.next_scan_at == T0 + 2
    assert st.scan_count == 6 and st.last_scan_at is not None


@pytest.mark.asyncio
async def test_daemon_save_keeps_scans_counted_elsewhere(store, tmp_path, cfg):
    daemon = _scheduler(store, cfg)
    await daemon.start()
    await _wait_for(lambda: daemon.state.scan_count >= 1)

    other = _scheduler(JsonlStore(SYMBOL, base_dir=tmp_path), cfg,
                       FakeSource(prices=[7.0], start_t=T0 + 2_000 * STEP))
    await other.restore()
    await other.scan_now()
    st = await store.load_run_state()
    assert st.scan_count == 2 and st.running is True

    await daemon.stop()
    st = await store.load_run_state()
    assert st.scan_count == 2 and st.running is False


@pytest.mark.asyncio
async def test_stop_lets_the_in_flight_scan_finish(store, cfg):
    await seed_prices(store, [100.0 - i for i in range(30)])
    posting = asyncio.Event()

    async def slow_hook(request: httpx.Request) -> httpx.Response:
        posting.set()
        await asyncio.sleep(0.3)
        return httpx.Response(200, json={"ok": True})

    hook = "https://hooks.example.test/ema"
    notifier = WebhookNotifier(hook, transport=httpx.MockTransport(slow_hook))
    hooked = replace(cfg, webhook_url=hook)
    sch = Scheduler(ScanOrchestrator(SYMBOL, hooked, FakeSource(prices=[200.0]), store, notifier), store, hooked)

    await sch.start()
    await asyncio.wait_for(posting.wait(), timeout=2)
    assert await sch.stop() is True

    assert len(await store.query_signals()) == 1
    scans = await store.query_scans()
    assert len(scans) == 1
    assert scans[0].outcome is Outcome.SUCCESS and scans[0].notification_sent is True
    st = await store.load_run_state()
    assert st.running is False and st.scan_count == 1 and st.next_scan_at is None
    await notifier.aclose()
