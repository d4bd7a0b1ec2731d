# emascan/processing/series.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config.scanner import ScannerConfig
from emascan.core.models import PricePoint
from emascan.ingestion.fetch_data import PriceSource
from emascan.utils.helpers import get_logger
from emascan.utils.persist import Store

log = get_logger(__name__)


@dataclass
class AssembledSeries:
    points: List[PricePoint] = field(default_factory=list)
    stored_count: int = 0
    historical_count: int = 0

    @property
    def prices(self) -> List[float]:
        return [p.price for p in self.points]

    def __len__(self) -> int:
        return len(self.points)


def candles_to_points(candles: List[Dict[str, Any]]) -> List[PricePoint]:
    """Candle dicts {t,o,h,l,c,v} -> close-price points."""
    return [PricePoint(t=int(c["t"]), price=float(c["c"]), volume=float(c.get("v") or 0.0)) for c in candles]


def _dedupe_sorted(points: List[PricePoint]) -> List[PricePoint]:
    """Sort by t and keep the last row for any repeated timestamp."""
    by_t: Dict[int, PricePoint] = {}
    for p in points:
        by_t[p.t] = p
    return [by_t[t] for t in sorted(by_t)]


class PriceSeriesAssembler:
    """
    Builds the price series a scan runs its EMAs over.

    Stored points come first. With nothing stored the series is pure history
    (cold start); with fewer stored points than the slow period, history
    strictly older than the oldest stored point is prepended.
    """

    def __init__(self, store: Store, source: PriceSource, symbol: str, cfg: ScannerConfig):
        self.store = store
        self.source = source
        self.symbol = symbol
        self.cfg = cfg

    async def _historical(self, points: int) -> List[PricePoint]:
        try:
            candles = await self.source.fetch_historical(self.symbol, points, self.cfg.granularity_s)
        except Exception as e:
            log.warning(f"[{self.symbol}] historical fetch failed, continuing without backfill: {e}")
            return []
        return candles_to_points(candles)

    async def assemble(self, max_historical_points: Optional[int] = None) -> AssembledSeries:
        want = max_historical_points or self.cfg.historical_points
        stored = _dedupe_sorted(await self.store.recent_prices(self.cfg.stored_lookback))

        if not stored:
            hist = _dedupe_sorted(await self._historical(want))
            log.info(f"[{self.symbol}] cold start: {len(hist)} historical points")
            return AssembledSeries(points=hist, stored_count=0, historical_count=len(hist))

        if len(stored) < self.cfg.slow_period:
            deficit = self.cfg.slow_period - len(stored)
            oldest = stored[0].t
            hist = [p for p in await self._historical(deficit + self.cfg.backfill_surplus) if p.t < oldest]
            hist = _dedupe_sorted(hist)
            log.info(
                f"[{self.symbol}] backfill: stored={len(stored)} deficit={deficit} "
                f"prepended={len(hist)}"
            )
            return AssembledSeries(points=hist + stored, stored_count=len(stored), historical_count=len(hist))

        return AssembledSeries(points=stored, stored_count=len(stored), historical_count=0)
