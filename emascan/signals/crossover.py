# emascan/signals/crossover.py
from __future__ import annotations

from typing import Optional

from emascan.core.models import CrossoverKind


def detect_crossover(
    cur_fast: Optional[float],
    cur_slow: Optional[float],
    prev_fast: Optional[float],
    prev_slow: Optional[float],
) -> CrossoverKind:
    """
    Fast/slow EMA crossover between the previous and the current point.

    A tie on the previous point only resolves direction; a tie on the current
    point never fires. Missing values give NONE.
    """
    if cur_fast is None or cur_slow is None or prev_fast is None or prev_slow is None:
        return CrossoverKind.NONE

    if prev_fast <= prev_slow and cur_fast > cur_slow:
        return CrossoverKind.BULLISH
    if prev_fast >= prev_slow and cur_fast < cur_slow:
        return CrossoverKind.BEARISH
    return CrossoverKind.NONE
