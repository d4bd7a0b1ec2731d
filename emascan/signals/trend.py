# emascan/signals/trend.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from emascan.core.models import CrossoverKind, PricePoint, Signal
from emascan.utils.helpers import ms_to_iso, now_utc_ms

STRONG_PCT = 2.0
MODERATE_PCT = 0.5
ACCELERATION_DISTANCE = 0.5


class Trend(str, Enum):
    BULLISH = "bullish"    # fast above slow
    BEARISH = "bearish"    # fast below slow
    NEUTRAL = "neutral"    # equal or not enough data


class Strength(str, Enum):
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"
    UNKNOWN = "unknown"


class TradeAction(str, Enum):
    LONG_ENTRY = "LONG_ENTRY"
    LONG_HOLD = "LONG_HOLD"
    SHORT_ENTRY = "SHORT_ENTRY"
    SHORT_HOLD = "SHORT_HOLD"
    EXIT_WARNING = "EXIT_WARNING"
    HOLD = "HOLD"


@dataclass(frozen=True)
class TrendStrength:
    strength: Strength
    percentage: float = 0.0
    distance: Optional[float] = None


@dataclass(frozen=True)
class TradeSignal:
    action: TradeAction
    confidence: str          # HIGH | MEDIUM | LOW
    message: str
    price: Optional[float] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def current_trend(fast: Optional[float], slow: Optional[float]) -> Trend:
    if fast is None or slow is None:
        return Trend.NEUTRAL
    if fast > slow:
        return Trend.BULLISH
    if fast < slow:
        return Trend.BEARISH
    return Trend.NEUTRAL


def trend_strength(fast: Optional[float], slow: Optional[float], price: Optional[float]) -> TrendStrength:
    """EMA gap as a percentage of price: >2% strong, >0.5% moderate, else weak."""
    if fast is None or slow is None or not price:
        return TrendStrength(Strength.UNKNOWN)
    distance = abs(fast - slow)
    pct = distance / price * 100.0
    if pct > STRONG_PCT:
        s = Strength.STRONG
    elif pct > MODERATE_PCT:
        s = Strength.MODERATE
    else:
        s = Strength.WEAK
    return TrendStrength(s, pct, distance)


def _minutes(ms: int) -> int:
    return int(round(ms / 60_000))


def analyze_signal_history(signals: Sequence[Signal]) -> List[Dict[str, Any]]:
    """
    Annotate crossovers (any order in, oldest first out) with the trend each one
    ended: its duration, the price move across it and whether it was a reversal.
    """
    out: List[Dict[str, Any]] = []
    trend = Trend.NEUTRAL
    start: Optional[Signal] = None
    for sig in sorted(signals, key=lambda x: x.t):
        prev_trend = trend
        trend = Trend(sig.kind.value)
        duration = change = change_pct = None
        if start is not None:
            duration = _minutes(sig.t - start.t)
            change = sig.price - start.price
            change_pct = change / start.price * 100.0 if start.price else None
        out.append(
            {
                **sig.to_row(),
                "trend_info": {
                    "previous_trend": prev_trend.value,
                    "new_trend": trend.value,
                    "trend_duration_minutes": duration,
                    "trend_price_change": change,
                    "trend_percentage_change": change_pct,
                    "is_trend_reversal": prev_trend is not Trend.NEUTRAL and prev_trend is not trend,
                    "signal_strength": asdict(trend_strength(sig.fast_ema, sig.slow_ema, sig.price)),
                },
            }
        )
        start = sig
    return out


def signal_still_valid(last_signal: Optional[Signal], latest: Optional[PricePoint]) -> Optional[bool]:
    """Does the last crossover still agree with the current fast/slow ordering? None if unknown."""
    if last_signal is None or latest is None:
        return None
    trend = current_trend(latest.fast_ema, latest.slow_ema)
    if trend is Trend.NEUTRAL:
        return None
    return (trend is Trend.BULLISH) == (last_signal.kind is CrossoverKind.BULLISH)


def trend_status(latest: Optional[PricePoint], last_signal: Optional[Signal]) -> Dict[str, Any]:
    if latest is None or latest.fast_ema is None or latest.slow_ema is None:
        return {
            "current_trend": Trend.NEUTRAL.value,
            "trend_since": None,
            "trend_duration_minutes": 0,
            "message": "Insufficient EMA data",
        }

    fast, slow, price = latest.fast_ema, latest.slow_ema, latest.price
    strength = trend_strength(fast, slow, price)
    since = duration = None
    change = change_pct = 0.0
    if last_signal is not None:
        since = ms_to_iso(last_signal.t)
        duration = _minutes(latest.t - last_signal.t)
        change = price - last_signal.price
        change_pct = change / last_signal.price * 100.0 if last_signal.price else 0.0

    return {
        "current_trend": current_trend(fast, slow).value,
        "trend_since": since,
        "trend_duration_minutes": duration or 0,
        "last_crossover_signal": last_signal.kind.value if last_signal else None,
        "last_crossover_price": last_signal.price if last_signal else None,
        "last_crossover_time": since,
        "last_crossover_valid": signal_still_valid(last_signal, latest),
        "current_price": price,
        "current_fast_ema": fast,
        "current_slow_ema": slow,
        "trend_strength": asdict(strength),
        "price_change_since_signal": change,
        "percentage_change_since_signal": change_pct,
        "is_trend_accelerating": abs(fast - slow) > ACCELERATION_DISTANCE,
    }


def trading_signals(status: Dict[str, Any]) -> List[TradeSignal]:
    trend = status.get("current_trend")
    strength = (status.get("trend_strength") or {}).get("strength")
    distance = (status.get("trend_strength") or {}).get("distance")
    price = status.get("current_price")
    out: List[TradeSignal] = []

    if trend == Trend.BULLISH.value:
        if strength == Strength.STRONG:
            out.append(TradeSignal(TradeAction.LONG_ENTRY, "HIGH",
                                   "Strong bullish trend - consider a LONG position", price,
                                   {"ema_distance": distance}))
        elif strength == Strength.MODERATE:
            out.append(TradeSignal(TradeAction.LONG_HOLD, "MEDIUM",
                                   "Moderate bullish trend - hold LONG position", price))
    elif trend == Trend.BEARISH.value:
        if strength == Strength.STRONG:
            out.append(TradeSignal(TradeAction.SHORT_ENTRY, "HIGH",
                                   "Strong bearish trend - consider a SHORT position", price,
                                   {"ema_distance": distance}))
        elif strength == Strength.MODERATE:
            out.append(TradeSignal(TradeAction.SHORT_HOLD, "MEDIUM",
                                   "Moderate bearish trend - hold SHORT position", price))

    if strength == Strength.WEAK:
        out.append(TradeSignal(TradeAction.EXIT_WARNING, "LOW",
                               f"Weak {trend} trend - consider exiting the position", price))
    return out


def _fmt_duration(minutes: int) -> str:
    return f"{minutes // 60}h {minutes % 60}m"


def overall_recommendation(status: Dict[str, Any], signals: Sequence[TradeSignal]) -> Dict[str, Any]:
    trend = status.get("current_trend", Trend.NEUTRAL.value)
    duration = _fmt_duration(int(status.get("trend_duration_minutes") or 0))
    strong = [s for s in signals if s.confidence == "HIGH"]
    if strong:
        return {
            "action": strong[0].action.value,
            "confidence": "HIGH",
            "message": strong[0].message,
            "current_trend": trend,
            "trend_duration": duration,
        }
    return {
        "action": TradeAction.HOLD.value,
        "confidence": "MEDIUM",
        "message": f"Current {trend} trend, monitor for changes",
        "current_trend": trend,
        "trend_duration": duration,
    }


def trend_report(
    latest: Optional[PricePoint],
    recent_signals: Sequence[Signal],
    now_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """Trend status, trade hints, the last five annotated crossovers and a recommendation."""
    newest_first = sorted(recent_signals, key=lambda x: x.t, reverse=True)
    status = trend_status(latest, newest_first[0] if newest_first else None)
    hints = trading_signals(status)
    return {
        "generated_at": ms_to_iso(now_ms if now_ms is not None else now_utc_ms()),
        "trading_signals": [{**asdict(h), "action": h.action.value} for h in hints],
        "trend_analysis": status,
        "recent_crossovers": analyze_signal_history(newest_first)[-5:],
        "recommendation": overall_recommendation(status, hints),
    }
