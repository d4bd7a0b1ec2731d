# emascan/pipeline/reports.py
from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import pandas as pd

from emascan.core.models import CrossoverKind, Origin, Outcome, PricePoint, ScanRecord, Signal
from emascan.utils.helpers import ms_to_iso, now_utc_ms
from emascan.utils.persist import DAY_MS, Store

WEEK_MS = 7 * DAY_MS


def _scans_df(scans: Sequence[ScanRecord]) -> pd.DataFrame:
    return pd.DataFrame([s.to_row() for s in scans])


def _signals_df(signals: Sequence[Signal]) -> pd.DataFrame:
    return pd.DataFrame([s.to_row() for s in signals])


def scan_stats(scans: Sequence[ScanRecord]) -> Dict[str, Any]:
    """Totals by outcome and origin, mean execution time, last scan time."""
    df = _scans_df(scans)
    if df.empty:
        return {
            "total_scans": 0,
            "successful_scans": 0,
            "failed_scans": 0,
            "manual_scans": 0,
            "automatic_scans": 0,
            "avg_execution_ms": None,
            "last_scan_time": None,
        }
    return {
        "total_scans": int(len(df)),
        "successful_scans": int((df["outcome"] == Outcome.SUCCESS.value).sum()),
        "failed_scans": int((df["outcome"] == Outcome.ERROR.value).sum()),
        "manual_scans": int((df["origin"] == Origin.MANUAL.value).sum()),
        "automatic_scans": int((df["origin"] == Origin.AUTOMATIC.value).sum()),
        "avg_execution_ms": round(float(pd.to_numeric(df["execution_ms"], errors="coerce").mean()), 1),
        "last_scan_time": ms_to_iso(int(df["t"].max())),
    }


def _price_range(df: pd.DataFrame) -> Optional[Dict[str, float]]:
    if df.empty:
        return None
    p = pd.to_numeric(df["price"], errors="coerce")
    return {"min": float(p.min()), "max": float(p.max()), "avg": float(p.mean())}


def signal_stats(signals: Sequence[Signal]) -> Dict[str, Any]:
    """Counts and shares per kind, mean spacing between crossovers, price range per kind."""
    df = _signals_df(signals)
    total = int(len(df))
    if total == 0:
        return {
            "total_signals": 0,
            "bullish_signals": 0,
            "bearish_signals": 0,
            "bullish_pct": 0.0,
            "bearish_pct": 0.0,
            "avg_gap_ms": None,
            "avg_gap_hours": None,
            "avg_gap_days": None,
            "price_ranges": {"bullish": None, "bearish": None},
        }

    bull = df[df["kind"] == CrossoverKind.BULLISH.value]
    bear = df[df["kind"] == CrossoverKind.BEARISH.value]

    gaps = df["t"].sort_values().diff().dropna()
    avg_gap = float(gaps.mean()) if len(gaps) else None

    return {
        "total_signals": total,
        "bullish_signals": int(len(bull)),
        "bearish_signals": int(len(bear)),
        "bullish_pct": round(len(bull) / total * 100.0, 2),
        "bearish_pct": round(len(bear) / total * 100.0, 2),
        "avg_gap_ms": avg_gap,
        "avg_gap_hours": round(avg_gap / 3_600_000, 2) if avg_gap is not None else None,
        "avg_gap_days": round(avg_gap / DAY_MS, 2) if avg_gap is not None else None,
        "price_ranges": {"bullish": _price_range(bull), "bearish": _price_range(bear)},
    }


def scanner_stats(
    latest: Optional[PricePoint],
    signals: Sequence[Signal],
    total_points: int,
    now_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """Latest price/EMAs plus crossover counts for the trailing week."""
    now_ms = now_ms if now_ms is not None else now_utc_ms()
    df = _signals_df(signals)
    bullish = bearish = 0
    if not df.empty:
        week = df[df["t"] >= now_ms - WEEK_MS]
        bullish = int((week["kind"] == CrossoverKind.BULLISH.value).sum())
        bearish = int((week["kind"] == CrossoverKind.BEARISH.value).sum())

    return {
        "latest_price": latest.price if latest else None,
        "latest_fast_ema": latest.fast_ema if latest else None,
        "latest_slow_ema": latest.slow_ema if latest else None,
        "last_scan_time": ms_to_iso(latest.t) if latest else None,
        "weekly_bullish_signals": bullish,
        "weekly_bearish_signals": bearish,
        "total_data_points": int(total_points),
        "ema_status": {
            "fast_ready": bool(latest and latest.fast_ema is not None),
            "slow_ready": bool(latest and latest.slow_ema is not None),
        },
    }


async def collect_stats(store: Store, now_ms: Optional[int] = None) -> Dict[str, Any]:
    """All three reports for one symbol's store."""
    now_ms = now_ms if now_ms is not None else now_utc_ms()
    latest = await store.latest_price()
    signals = await store.query_signals()
    scans = await store.query_scans()
    return {
        "symbol": store.symbol,
        "scanner": scanner_stats(latest, signals, await store.count_prices(), now_ms),
        "scans": scan_stats(scans),
        "signals": signal_stats(signals),
    }
