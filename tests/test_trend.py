from conftest import SYMBOL, T0
from emascan.core.models import CrossoverKind, PricePoint, Signal
from emascan.signals.trend import (
    Strength,
    TradeAction,
    Trend,
    analyze_signal_history,
    current_trend,
    overall_recommendation,
    signal_still_valid,
    trading_signals,
    trend_report,
    trend_status,
    trend_strength,
)

MIN = 60_000


def _sig(t, kind, price, fast=100.0, slow=100.0):
    return Signal(t=t, symbol=SYMBOL, kind=kind, price=price, fast_ema=fast, slow_ema=slow,
                  prev_fast_ema=fast, prev_slow_ema=slow)


def test_current_trend():
    assert current_trend(2.0, 1.0) is Trend.BULLISH
    assert current_trend(1.0, 2.0) is Trend.BEARISH
    assert current_trend(1.0, 1.0) is Trend.NEUTRAL
    assert current_trend(None, 1.0) is Trend.NEUTRAL


def test_strength_thresholds():
    assert trend_strength(103.0, 100.0, 100.0).strength is Strength.STRONG     # 3%
    assert trend_strength(101.0, 100.0, 100.0).strength is Strength.MODERATE   # 1%
    assert trend_strength(100.2, 100.0, 100.0).strength is Strength.WEAK       # 0.2%
    assert trend_strength(None, 100.0, 100.0).strength is Strength.UNKNOWN
    ts = trend_strength(98.0, 100.0, 50.0)
    assert ts.distance == 2.0 and ts.percentage == 4.0


def test_signal_history_annotations():
    sigs = [
        _sig(T0 + 90 * MIN, CrossoverKind.BEARISH, 110.0),
        _sig(T0, CrossoverKind.BULLISH, 100.0),
        _sig(T0 + 120 * MIN, CrossoverKind.BEARISH, 99.0),
    ]
    out = analyze_signal_history(sigs)
    assert [r["t"] for r in out] == [T0, T0 + 90 * MIN, T0 + 120 * MIN]

    first, second, third = (r["trend_info"] for r in out)
    assert first["previous_trend"] == "neutral" and first["is_trend_reversal"] is False
    assert first["trend_duration_minutes"] is None
    assert second["previous_trend"] == "bullish" and second["new_trend"] == "bearish"
    assert second["is_trend_reversal"] is True
    assert second["trend_duration_minutes"] == 90
    assert second["trend_price_change"] == 10.0 and second["trend_percentage_change"] == 10.0
    assert third["is_trend_reversal"] is False


def test_last_signal_validity():
    bull = _sig(T0, CrossoverKind.BULLISH, 100.0)
    assert signal_still_valid(bull, PricePoint(t=T0 + MIN, price=1.0, fast_ema=2.0, slow_ema=1.0)) is True
    assert signal_still_valid(bull, PricePoint(t=T0 + MIN, price=1.0, fast_ema=1.0, slow_ema=2.0)) is False
    assert signal_still_valid(None, PricePoint(t=T0, price=1.0)) is None


def test_status_without_emas_is_neutral():
    st = trend_status(PricePoint(t=T0, price=10.0), None)
    assert st["current_trend"] == "neutral"
    assert st["message"] == "Insufficient EMA data"


def test_strong_bullish_recommends_long_entry():
    latest = PricePoint(t=T0 + 150 * MIN, price=100.0, fast_ema=104.0, slow_ema=100.0)
    last = _sig(T0, CrossoverKind.BULLISH, 95.0)
    st = trend_status(latest, last)
    assert st["current_trend"] == "bullish"
    assert st["trend_duration_minutes"] == 150
    assert st["last_crossover_valid"] is True
    assert st["price_change_since_signal"] == 5.0

    hints = trading_signals(st)
    assert [h.action for h in hints] == [TradeAction.LONG_ENTRY]
    rec = overall_recommendation(st, hints)
    assert rec["action"] == "LONG_ENTRY" and rec["confidence"] == "HIGH"
    assert rec["trend_duration"] == "2h 30m"


def test_weak_trend_warns_and_holds():
    latest = PricePoint(t=T0, price=100.0, fast_ema=99.9, slow_ema=100.0)
    st = trend_status(latest, None)
    hints = trading_signals(st)
    assert [h.action for h in hints] == [TradeAction.EXIT_WARNING]
    rec = overall_recommendation(st, hints)
    assert rec["action"] == "HOLD" and rec["confidence"] == "MEDIUM"


def test_moderate_bearish_hold_short():
    latest = PricePoint(t=T0, price=100.0, fast_ema=99.0, slow_ema=100.0)
    hints = trading_signals(trend_status(latest, None))
    assert [h.action for h in hints] == [TradeAction.SHORT_HOLD]


def test_report_shape():
    sigs = [_sig(T0 + i * MIN, CrossoverKind.BULLISH if i % 2 else CrossoverKind.BEARISH, 100.0) for i in range(7)]
    latest = PricePoint(t=T0 + 10 * MIN, price=100.0, fast_ema=101.0, slow_ema=100.0)
    rep = trend_report(latest, sigs, now_ms=T0)
    assert len(rep["recent_crossovers"]) == 5
    assert rep["trend_analysis"]["last_crossover_signal"] == "bearish"  # i=6 is the newest
    assert rep["recommendation"]["action"] == "HOLD"
    assert rep["trading_signals"][0]["action"] == "LONG_HOLD"
