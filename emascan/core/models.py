# emascan/core/models.py
"""
Records shared by the scanner: price points, crossover signals, scan audit
rows and the scheduler run state. Each record converts to/from the flat dict
rows written by the persistence store.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from emascan.utils.helpers import ms_to_iso, to_utc_ms


class CrossoverKind(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NONE = "none"


class Origin(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


def _opt_float(v: Any) -> Optional[float]:
    return None if v is None else float(v)


@dataclass(frozen=True)
class PricePoint:
    t: int                      # epoch ms, chronological key
    price: float
    volume: Optional[float] = None
    fast_ema: Optional[float] = None
    slow_ema: Optional[float] = None

    def to_row(self) -> Dict[str, Any]:
        return {"ts": ms_to_iso(self.t), **asdict(self)}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PricePoint":
        t = row.get("t")
        return cls(
            t=int(t) if t is not None else to_utc_ms(row["ts"]),
            price=float(row["price"]),
            volume=_opt_float(row.get("volume")),
            fast_ema=_opt_float(row.get("fast_ema")),
            slow_ema=_opt_float(row.get("slow_ema")),
        )


@dataclass(frozen=True)
class Signal:
    t: int
    symbol: str
    kind: CrossoverKind
    price: float
    fast_ema: float
    slow_ema: float
    prev_fast_ema: float
    prev_slow_ema: float
    origin: Origin = Origin.AUTOMATIC

    def __post_init__(self):
        if self.kind is CrossoverKind.NONE:
            raise ValueError("a Signal needs a bullish or bearish crossover")

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["kind"] = self.kind.value
        row["origin"] = self.origin.value
        return {"ts": ms_to_iso(self.t), **row}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Signal":
        return cls(
            t=int(row["t"]),
            symbol=str(row.get("symbol", "")),
            kind=CrossoverKind(row["kind"]),
            price=float(row["price"]),
            fast_ema=float(row["fast_ema"]),
            slow_ema=float(row["slow_ema"]),
            prev_fast_ema=float(row["prev_fast_ema"]),
            prev_slow_ema=float(row["prev_slow_ema"]),
            origin=Origin(row.get("origin", Origin.AUTOMATIC.value)),
        )


@dataclass(frozen=True)
class ScanRecord:
    t: int
    origin: Origin
    outcome: Outcome
    execution_ms: int
    source_latency_ms: Optional[int] = None
    price: Optional[float] = None
    volume: Optional[float] = None
    fast_ema: Optional[float] = None
    slow_ema: Optional[float] = None
    crossover: Optional[CrossoverKind] = None
    series_length: Optional[int] = None
    stored_count: Optional[int] = None
    historical_count: Optional[int] = None
    error_message: Optional[str] = None
    notification_sent: bool = False

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["origin"] = self.origin.value
        row["outcome"] = self.outcome.value
        row["crossover"] = self.crossover.value if self.crossover else None
        return {"ts": ms_to_iso(self.t), **row}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScanRecord":
        xo = row.get("crossover")
        return cls(
            t=int(row["t"]),
            origin=Origin(row["origin"]),
            outcome=Outcome(row["outcome"]),
            execution_ms=int(row.get("execution_ms") or 0),
            source_latency_ms=row.get("source_latency_ms"),
            price=_opt_float(row.get("price")),
            volume=_opt_float(row.get("volume")),
            fast_ema=_opt_float(row.get("fast_ema")),
            slow_ema=_opt_float(row.get("slow_ema")),
            crossover=CrossoverKind(xo) if xo else None,
            series_length=row.get("series_length"),
            stored_count=row.get("stored_count"),
            historical_count=row.get("historical_count"),
            error_message=row.get("error_message"),
            notification_sent=bool(row.get("notification_sent", False)),
        )


@dataclass
class ScannerRunState:
    symbol: str
    running: bool = False
    started_at: Optional[int] = None
    last_scan_at: Optional[int] = None
    next_scan_at: Optional[int] = None
    scan_count: int = 0
    updated_at: Optional[int] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScannerRunState":
        return cls(
            symbol=str(row["symbol"]),
            running=bool(row.get("running", False)),
            started_at=row.get("started_at"),
            last_scan_at=row.get("last_scan_at"),
            next_scan_at=row.get("next_scan_at"),
            scan_count=int(row.get("scan_count") or 0),
            updated_at=row.get("updated_at"),
        )


@dataclass
class ScanResult:
    """What one scan hands back to its caller (scheduler, CLI)."""
    success: bool
    symbol: str
    origin: Origin
    execution_ms: int
    price: Optional[float] = None
    fast_ema: Optional[float] = None
    slow_ema: Optional[float] = None
    crossover: Optional[CrossoverKind] = None
    series_length: int = 0
    stored_count: int = 0
    historical_count: int = 0
    notification_sent: bool = False
    error: Optional[str] = None
    t: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)
