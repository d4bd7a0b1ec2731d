# emascan/signals/ema.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence


def _check_period(period: int) -> int:
    if period < 1:
        raise ValueError("period must be >= 1")
    return int(period)


def compute_ema(prices: Sequence[float], period: int) -> float | None:
    """
    EMA of an oldest-first price sequence.

    Seeded with the SMA of the first `period` prices, then folded with
    k = 2 / (period + 1). Returns None when fewer than `period` prices exist.
    """
    period = _check_period(period)
    if len(prices) < period:
        return None
    k = 2.0 / (period + 1)
    ema = sum(float(p) for p in prices[:period]) / period
    for p in prices[period:]:
        ema = float(p) * k + ema * (1 - k)
    return ema


@dataclass
class EmaState:
    """
    Incremental form of `compute_ema`.

    Folding prices one at a time gives exactly the value `compute_ema`
    returns for the same prefix, so the state before the last update is the
    "previous" EMA.
    """
    period: int
    value: Optional[float] = None
    _seed: List[float] = field(default_factory=list, repr=False)

    def __post_init__(self):
        self.period = _check_period(self.period)

    @property
    def k(self) -> float:
        return 2.0 / (self.period + 1)

    @property
    def ready(self) -> bool:
        return self.value is not None

    def update(self, price: float) -> Optional[float]:
        price = float(price)
        if self.value is not None:
            self.value = price * self.k + self.value * (1 - self.k)
            return self.value
        self._seed.append(price)
        if len(self._seed) == self.period:
            self.value = sum(self._seed) / self.period
            self._seed = []
        return self.value

    def copy(self) -> "EmaState":
        return EmaState(self.period, self.value, list(self._seed))

    @classmethod
    def from_prices(cls, prices: Iterable[float], period: int) -> "EmaState":
        st = cls(period)
        for p in prices:
            st.update(p)
        return st


@dataclass(frozen=True)
class EmaPair:
    current: Optional[float]
    previous: Optional[float]


def ema_with_previous(prices: Sequence[float], period: int) -> EmaPair:
    """Current EMA over `prices` and the EMA over `prices[:-1]`, from one fold."""
    if not prices:
        return EmaPair(None, None)
    st = EmaState.from_prices(prices[:-1], period)
    previous = st.value
    current = st.update(prices[-1])
    return EmaPair(current=current, previous=previous)
