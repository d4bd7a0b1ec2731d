# emascan/app/scheduler.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from config.scanner import ScannerConfig, load_scanner_config
from config.settings import Settings, get_settings
from emascan.app.scanner import ScanOrchestrator
from emascan.core.models import Origin, ScannerRunState, ScanResult
from emascan.execution.notifier import WebhookNotifier
from emascan.ingestion.fetch_data import CoinbasePriceSource, PriceSource
from emascan.utils.helpers import KeyedLocks, file_lock, get_logger, ms_to_iso, now_utc_ms
from emascan.utils.persist import JsonlStore, Store, StoreFactory

log = get_logger(__name__)


def describe_run_state(state: ScannerRunState, now_ms: Optional[int] = None) -> Dict[str, Any]:
    """Human-facing status: timestamps as ISO, countdown to the next scan, uptime."""
    now_ms = now_ms if now_ms is not None else now_utc_ms()
    countdown_s = None
    if state.running and state.next_scan_at is not None:
        countdown_s = max(0, (state.next_scan_at - now_ms) // 1000)
    uptime_s = None
    if state.running and state.started_at is not None:
        uptime_s = max(0, (now_ms - state.started_at) // 1000)
    return {
        "symbol": state.symbol,
        "status": "running" if state.running else "stopped",
        "scan_count": state.scan_count,
        "started_at": ms_to_iso(state.started_at),
        "last_scan_at": ms_to_iso(state.last_scan_at),
        "next_scan_at": ms_to_iso(state.next_scan_at) if state.running else None,
        "next_scan_in_s": countdown_s,
        "uptime_s": uptime_s,
    }


class Scheduler:
    """
    Repeats automatic scans of one symbol every `scan_interval_ms`.

    STOPPED -> start() -> RUNNING -> stop() -> STOPPED. The first scan runs
    right away. The run state is written to the store after every scan and
    on start/stop. A scan in flight when stop() is called runs to completion.

    Other processes (the CLI `scan` command) may count scans into the same
    run state, so counters are always merged with the persisted copy.
    """

    def __init__(self, orchestrator: ScanOrchestrator, store: Store, cfg: ScannerConfig):
        self.orchestrator = orchestrator
        self.store = store
        self.cfg = cfg
        self.symbol = orchestrator.symbol
        self.state = ScannerRunState(symbol=self.symbol)
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def restore(self) -> ScannerRunState:
        """Pick up counters from the last process; a persisted `running` flag is stale."""
        prev = await self._load_state()
        if prev is not None and not self.running:
            prev.running = False
            prev.next_scan_at = None
            self.state = prev
        return self.state

    async def start(self) -> Optional[asyncio.Task]:
        if self.running:
            log.info(f"[{self.symbol}] scheduler already running")
            return None
        self.state.running = True
        self.state.started_at = now_utc_ms()
        self.state.next_scan_at = self.state.started_at
        await self._save_state()
        self._task = asyncio.create_task(self._loop(), name=f"scan-loop:{self.symbol}")
        log.info(f"[{self.symbol}] scheduler started, every {self.cfg.scan_interval_s:.0f}s")
        return self._task

    async def stop(self) -> bool:
        if self._task is None:
            return False
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        inflight, self._inflight = self._inflight, None
        if inflight is not None and not inflight.done():
            log.info(f"[{self.symbol}] waiting for the in-flight scan to finish")
            await inflight
        self.state.running = False
        self.state.next_scan_at = None
        await self._save_state()
        log.info(f"[{self.symbol}] scheduler stopped after {self.state.scan_count} scans")
        return True

    async def restart(self) -> Optional[asyncio.Task]:
        await self.stop()
        return await self.start()

    async def scan_now(self) -> ScanResult:
        """Manual scan; waits for any in-flight scan and leaves the schedule alone."""
        return await self.orchestrator.scan(Origin.MANUAL, wait=True, on_complete=self._count_scan)

    def status(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        return describe_run_state(self.state, now_ms)

    async def _loop(self) -> None:
        interval_ms = self.cfg.scan_interval_ms
        while True:
            # shielded: cancelling the loop never interrupts a scan half way
            self._inflight = asyncio.create_task(self._tick(), name=f"scan-tick:{self.symbol}")
            await asyncio.shield(self._inflight)
            self._inflight = None
            self.state.next_scan_at = now_utc_ms() + interval_ms
            await self._save_state()
            await asyncio.sleep(interval_ms / 1000.0)

    async def _tick(self) -> None:
        try:
            await self.orchestrator.scan(Origin.AUTOMATIC, wait=False, on_complete=self._count_scan)
        except Exception as e:
            log.exception(f"[{self.symbol}] automatic scan crashed: {e}")

    async def _count_scan(self, result: ScanResult) -> None:
        """Runs under the scan lock, so increments from different processes never interleave."""
        persisted = await self._load_state()
        self._merge_counters(persisted)
        if persisted is not None and not self.running:
            # the schedule belongs to whichever process runs the loop
            self.state.running = persisted.running
            self.state.started_at = persisted.started_at
            self.state.next_scan_at = persisted.next_scan_at
        self.state.last_scan_at = now_utc_ms()
        self.state.scan_count += 1
        await self._write_state()

    def _merge_counters(self, persisted: Optional[ScannerRunState]) -> None:
        if persisted is None:
            return
        self.state.scan_count = max(self.state.scan_count, persisted.scan_count)
        if persisted.last_scan_at is not None and (
            self.state.last_scan_at is None or persisted.last_scan_at > self.state.last_scan_at
        ):
            self.state.last_scan_at = persisted.last_scan_at

    async def _load_state(self) -> Optional[ScannerRunState]:
        try:
            return await self.store.load_run_state()
        except Exception as e:
            log.warning(f"[{self.symbol}] could not read run state: {e}")
            return None

    async def _save_state(self) -> None:
        async with file_lock(self.store.lock_path):
            self._merge_counters(await self._load_state())
            await self._write_state()

    async def _write_state(self) -> None:
        try:
            await self.store.save_run_state(self.state)
        except Exception as e:
            log.warning(f"[{self.symbol}] could not write run state: {e}")


class ScannerService:
    """
    Composition root: one price source, one notifier, one shared lock table,
    and one (store, orchestrator, scheduler) triple per configured symbol.
    """

    def __init__(
        self,
        cfg: ScannerConfig,
        settings: Optional[Settings] = None,
        source: Optional[PriceSource] = None,
        store_factory: Optional[StoreFactory] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        self.cfg = cfg
        self.settings = settings or get_settings()
        self.source = source or CoinbasePriceSource(timeout_s=cfg.fetch_timeout_s)
        if notifier is None and cfg.webhook_url:
            notifier = WebhookNotifier(cfg.webhook_url, timeout_s=cfg.fetch_timeout_s)
        self.notifier = notifier
        self.locks = KeyedLocks()
        make_store = store_factory or (lambda sym: JsonlStore(sym, self.settings))

        self.stores: Dict[str, Store] = {}
        self.schedulers: Dict[str, Scheduler] = {}
        for sym in cfg.symbols:
            store = make_store(sym)
            orch = ScanOrchestrator(sym, cfg, self.source, store, self.notifier, self.locks)
            self.stores[sym] = store
            self.schedulers[sym] = Scheduler(orch, store, cfg)

    @classmethod
    def from_config(cls, settings: Optional[Settings] = None) -> "ScannerService":
        s = settings or get_settings()
        return cls(load_scanner_config(s), settings=s)

    @property
    def symbols(self) -> List[str]:
        return list(self.schedulers)

    def scheduler(self, symbol: Optional[str] = None) -> Scheduler:
        sym = (symbol or self.symbols[0]).upper()
        try:
            return self.schedulers[sym]
        except KeyError:
            raise KeyError(f"{sym} is not configured (have: {', '.join(self.symbols)})") from None

    def store(self, symbol: Optional[str] = None) -> Store:
        return self.stores[self.scheduler(symbol).symbol]

    async def restore(self) -> None:
        for sch in self.schedulers.values():
            await sch.restore()

    async def start_all(self) -> List[asyncio.Task]:
        tasks = []
        for sch in self.schedulers.values():
            task = await sch.start()
            if task is not None:
                tasks.append(task)
        return tasks

    async def stop_all(self) -> None:
        for sch in self.schedulers.values():
            await sch.stop()

    async def scan_now(self, symbol: Optional[str] = None) -> ScanResult:
        return await self.scheduler(symbol).scan_now()

    def status(self, now_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        return [sch.status(now_ms) for sch in self.schedulers.values()]

    async def run_forever(self) -> None:
        await self.restore()
        tasks = await self.start_all()
        try:
            await asyncio.gather(*tasks)
        finally:
            await self.stop_all()
            await self.aclose()

    async def aclose(self) -> None:
        if self.notifier is not None:
            await self.notifier.aclose()
        aclose = getattr(self.source, "aclose", None)
        if aclose is not None:
            await aclose()
