# emascan/app/scanner.py
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from config.scanner import ScannerConfig
from emascan.core.models import (
    CrossoverKind,
    Origin,
    Outcome,
    PricePoint,
    ScanRecord,
    ScanResult,
    Signal,
)
from emascan.execution.notifier import ScanContext, WebhookNotifier
from emascan.ingestion.fetch_data import PriceQuote, PriceSource
from emascan.processing.series import AssembledSeries, PriceSeriesAssembler
from emascan.signals.crossover import detect_crossover
from emascan.signals.ema import ema_with_previous
from emascan.utils.helpers import KeyedLocks, file_lock, get_logger, now_utc_ms
from emascan.utils.persist import Store

log = get_logger(__name__)


def _elapsed_ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


class ScanOrchestrator:
    """
    One scan of one symbol:
    current price -> series -> fast/slow EMA (current + previous) -> crossover
    -> price row -> [signal row -> webhook] -> scan record.

    Every attempt leaves exactly one ScanRecord, successful or not. Scans of
    the same symbol never overlap (see `scan`).
    """

    def __init__(
        self,
        symbol: str,
        cfg: ScannerConfig,
        source: PriceSource,
        store: Store,
        notifier: Optional[WebhookNotifier] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.symbol = symbol
        self.cfg = cfg
        self.source = source
        self.store = store
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.assembler = PriceSeriesAssembler(store, source, symbol, cfg)

    @property
    def busy(self) -> bool:
        return self.locks.locked(self.symbol)

    @asynccontextmanager
    async def exclusive(self, wait: bool = True) -> AsyncIterator[bool]:
        """
        In-process lock first, then the store's lock file, so scans of this
        symbol never overlap even across processes sharing the data dir.
        """
        if wait:
            async with self.locks.hold(self.symbol):
                async with file_lock(self.store.lock_path, wait=True) as acquired:
                    yield acquired
            return
        async with self.locks.try_hold(self.symbol) as acquired:
            if not acquired:
                yield False
                return
            async with file_lock(self.store.lock_path, wait=False) as acquired:
                yield acquired

    async def scan(
        self,
        origin: Origin = Origin.MANUAL,
        wait: bool = True,
        on_complete: Optional[Callable[[ScanResult], Awaitable[None]]] = None,
    ) -> Optional[ScanResult]:
        """
        Run one scan under the symbol's single-flight lock.

        wait=True queues behind an in-flight scan; wait=False returns None
        straight away when one is in flight (the caller's tick is dropped).
        `on_complete` runs before the lock is released.
        """
        async with self.exclusive(wait) as acquired:
            if not acquired:
                log.info(f"[{self.symbol}] {origin.value} scan skipped: another scan is in flight")
                return None
            result = await self._scan(origin)
            if on_complete is not None:
                await on_complete(result)
            return result

    async def _scan(self, origin: Origin) -> ScanResult:
        cfg = self.cfg
        t0 = time.perf_counter()
        source_latency_ms: Optional[int] = None
        quote: Optional[PriceQuote] = None
        series: Optional[AssembledSeries] = None
        prices: Optional[List[float]] = None
        log.info(f"[{self.symbol}] {origin.value} scan started")

        try:
            t_fetch = time.perf_counter()
            quote = await self.source.get_current_price(self.symbol)
            source_latency_ms = _elapsed_ms(t_fetch)

            series = await self.assembler.assemble(cfg.historical_points)
            stale = bool(series.points) and quote.t <= series.points[-1].t
            if stale:
                log.warning(
                    f"[{self.symbol}] quote t={quote.t} is not newer than the last point "
                    f"t={series.points[-1].t}; skipping it"
                )
                prices = series.prices
            else:
                prices = series.prices + [quote.price]

            fast = ema_with_previous(prices, cfg.fast_period)
            slow = ema_with_previous(prices, cfg.slow_period)
            if slow.current is None:
                log.info(f"[{self.symbol}] {len(prices)} points, slow EMA needs {cfg.slow_period}")

            # the newest pair was already judged by the scan that stored it
            kind = CrossoverKind.NONE if stale else detect_crossover(
                fast.current, slow.current, fast.previous, slow.previous
            )

            if not stale:
                await self.store.append_price(
                    PricePoint(t=quote.t, price=quote.price, volume=quote.volume,
                               fast_ema=fast.current, slow_ema=slow.current)
                )

            notification_sent = False
            if kind is not CrossoverKind.NONE:
                signal = Signal(
                    t=quote.t,
                    symbol=self.symbol,
                    kind=kind,
                    price=quote.price,
                    fast_ema=fast.current,
                    slow_ema=slow.current,
                    prev_fast_ema=fast.previous,
                    prev_slow_ema=slow.previous,
                    origin=origin,
                )
                await self.store.append_signal(signal)
                log.info(
                    f"[{self.symbol}] {kind.value.upper()} crossover @ {quote.price} "
                    f"fast={fast.current:.4f} slow={slow.current:.4f}"
                )
                notification_sent = await self._notify(
                    signal,
                    ScanContext(
                        origin=origin,
                        series_length=len(prices),
                        source_latency_ms=source_latency_ms,
                        fast_period=cfg.fast_period,
                        slow_period=cfg.slow_period,
                    ),
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            elapsed = _elapsed_ms(t0)
            log.exception(f"[{self.symbol}] scan failed: {e}")
            now = now_utc_ms()
            error = str(e) or type(e).__name__
            series_length = len(prices) if prices is not None else None
            await self._record(
                ScanRecord(
                    t=now,
                    origin=origin,
                    outcome=Outcome.ERROR,
                    execution_ms=elapsed,
                    source_latency_ms=source_latency_ms,
                    price=quote.price if quote is not None else None,
                    volume=quote.volume if quote is not None else None,
                    series_length=series_length,
                    stored_count=series.stored_count if series is not None else None,
                    historical_count=series.historical_count if series is not None else None,
                    error_message=error,
                )
            )
            return ScanResult(
                success=False,
                symbol=self.symbol,
                origin=origin,
                execution_ms=elapsed,
                price=quote.price if quote is not None else None,
                series_length=series_length or 0,
                stored_count=series.stored_count if series is not None else 0,
                historical_count=series.historical_count if series is not None else 0,
                error=error,
                t=now,
                meta={"source_latency_ms": source_latency_ms},
            )

        elapsed = _elapsed_ms(t0)
        await self._record(
            ScanRecord(
                t=quote.t,
                origin=origin,
                outcome=Outcome.SUCCESS,
                execution_ms=elapsed,
                source_latency_ms=source_latency_ms,
                price=quote.price,
                volume=quote.volume,
                fast_ema=fast.current,
                slow_ema=slow.current,
                crossover=kind,
                series_length=len(prices),
                stored_count=series.stored_count,
                historical_count=series.historical_count,
                notification_sent=notification_sent,
            )
        )
        log.info(
            f"[{self.symbol}] scan done in {elapsed}ms price={quote.price} "
            f"points={len(prices)} crossover={kind.value}"
        )
        return ScanResult(
            success=True,
            symbol=self.symbol,
            origin=origin,
            execution_ms=elapsed,
            price=quote.price,
            fast_ema=fast.current,
            slow_ema=slow.current,
            crossover=kind,
            series_length=len(prices),
            stored_count=series.stored_count,
            historical_count=series.historical_count,
            notification_sent=notification_sent,
            t=quote.t,
            meta={
                "prev_fast_ema": fast.previous,
                "prev_slow_ema": slow.previous,
                "source_latency_ms": source_latency_ms,
                "stale_quote": stale,
            },
        )

    async def _notify(self, signal: Signal, ctx: ScanContext) -> bool:
        if self.notifier is None or not self.notifier.url:
            return False
        try:
            return await self.notifier.send_signal(signal, ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[{self.symbol}] notification failed: {e}")
            return False

    async def _record(self, record: ScanRecord) -> None:
        try:
            await self.store.append_scan(record)
        except Exception as e:
            log.error(f"[{self.symbol}] could not write scan record ({record.outcome.value}): {e}")
