# emascan/utils/persist.py
from __future__ import annotations

import abc
import asyncio
import gzip
import json
import os
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from config.settings import Settings, get_settings
from emascan.core.models import (
    CrossoverKind,
    Origin,
    Outcome,
    PricePoint,
    ScannerRunState,
    ScanRecord,
    Signal,
)
from emascan.utils.helpers import get_logger, now_utc_ms

log = get_logger(__name__)

DAY_MS = 86_400_000


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


class JsonlSink:
    """
    Minimal buffered JSONL writer with optional gzip.
    Not thread-safe; intended for single-process async usage.
    """
    def __init__(self, file_path: Path, flush_every: int = 100, compressed: bool = True):
        self.file_path = file_path
        self.flush_every = flush_every
        self.compressed = compressed
        self._buf: list[str] = []
        self._lock = asyncio.Lock()
        _ensure_parent(file_path)

    async def write(self, row: Dict[str, Any]) -> None:
        if is_dataclass(row):
            row = asdict(row)
        line = json.dumps(row, ensure_ascii=False)
        async with self._lock:
            self._buf.append(line)
            if len(self._buf) >= self.flush_every:
                await self.flush()

    async def flush(self) -> None:
        if not self._buf:
            return
        data = ("\n".join(self._buf) + "\n").encode("utf-8")
        if self.compressed:
            # append mode gzip without reopening whole file each time
            with gzip.open(self.file_path, "ab") as f:
                f.write(data)
        else:
            with open(self.file_path, "ab") as f:
                f.write(data)
        self._buf.clear()

    async def close(self) -> None:
        await self.flush()


def read_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield rows of a (possibly gzipped) JSONL file; torn or blank lines are skipped."""
    if not path.exists():
        return
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rt", encoding="utf-8") as f:
        for n, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                log.warning(f"{path.name}:{n}: skipping unreadable row")


def rewrite_jsonl(path: Path, rows: List[Dict[str, Any]]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(tmp, "wt", encoding="utf-8") as f:
        for r in rows:
            f.write(json.dumps(r, ensure_ascii=False) + "\n")
    os.replace(tmp, path)


# ---------------------------------
# Store interface
# ---------------------------------
class Store(abc.ABC):
    """Append-only price/signal/scan tables plus one run-state record, for one symbol."""

    symbol: str

    @abc.abstractmethod
    async def append_price(self, point: PricePoint) -> None: ...

    @abc.abstractmethod
    async def recent_prices(self, limit: int) -> List[PricePoint]:
        """Most recent `limit` price points, oldest first."""

    @abc.abstractmethod
    async def count_prices(self) -> int: ...

    @abc.abstractmethod
    async def append_signal(self, signal: Signal) -> None: ...

    @abc.abstractmethod
    async def query_signals(
        self,
        limit: Optional[int] = None,
        kind: Optional[CrossoverKind] = None,
        since_ms: Optional[int] = None,
    ) -> List[Signal]:
        """Newest first."""

    @abc.abstractmethod
    async def append_scan(self, record: ScanRecord) -> None: ...

    @abc.abstractmethod
    async def query_scans(
        self,
        limit: Optional[int] = None,
        origin: Optional[Origin] = None,
        outcome: Optional[Outcome] = None,
        since_ms: Optional[int] = None,
    ) -> List[ScanRecord]:
        """Newest first."""

    @abc.abstractmethod
    async def save_run_state(self, state: ScannerRunState) -> None: ...

    @abc.abstractmethod
    async def load_run_state(self) -> Optional[ScannerRunState]: ...

    @abc.abstractmethod
    async def prune(self, now_ms: Optional[int] = None) -> Dict[str, int]: ...

    @property
    def lock_path(self) -> Optional[Path]:
        """File that serializes scans of this symbol across processes; None when unsupported."""
        return None

    async def latest_price(self) -> Optional[PricePoint]:
        rows = await self.recent_prices(1)
        return rows[-1] if rows else None


class JsonlStore(Store):
    """
    JSONL tables under <dir_store>/<exchange>/<symbol>/:
      prices.jsonl, signals.jsonl, scans.jsonl (optionally .gz) and run_state.json
    """

    def __init__(self, symbol: str, settings: Optional[Settings] = None, base_dir: Optional[Path] = None):
        s = settings or get_settings()
        self.symbol = symbol
        self.compressed = s.persist.fmt.endswith(".gz")
        root = Path(base_dir) if base_dir is not None else s.persist.dir_store
        self.dir = root / s.api.exchange / symbol
        self.dir.mkdir(parents=True, exist_ok=True)
        self.price_retention_days = s.persist.price_retention_days
        self.scan_retention_days = s.persist.scan_retention_days

    def _table(self, name: str) -> Path:
        suffix = ".jsonl.gz" if self.compressed else ".jsonl"
        return self.dir / f"{name}{suffix}"

    @property
    def run_state_path(self) -> Path:
        return self.dir / "run_state.json"

    @property
    def lock_path(self) -> Path:
        return self.dir / "scan.lock"

    async def _append(self, table: str, row: Dict[str, Any]) -> None:
        sink = JsonlSink(self._table(table), flush_every=1, compressed=self.compressed)
        await sink.write(row)
        await sink.close()

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return list(read_jsonl(self._table(table)))

    # prices
    async def append_price(self, point: PricePoint) -> None:
        await self._append("prices", point.to_row())

    async def recent_prices(self, limit: int) -> List[PricePoint]:
        points = sorted((PricePoint.from_row(r) for r in self._rows("prices")), key=lambda p: p.t)
        return points[-limit:] if limit > 0 else []

    async def count_prices(self) -> int:
        return len(self._rows("prices"))

    # signals
    async def append_signal(self, signal: Signal) -> None:
        await self._append("signals", signal.to_row())

    async def query_signals(
        self,
        limit: Optional[int] = None,
        kind: Optional[CrossoverKind] = None,
        since_ms: Optional[int] = None,
    ) -> List[Signal]:
        out = [Signal.from_row(r) for r in self._rows("signals")]
        if kind is not None:
            out = [x for x in out if x.kind is kind]
        if since_ms is not None:
            out = [x for x in out if x.t >= since_ms]
        out.sort(key=lambda x: x.t, reverse=True)
        return out[:limit] if limit is not None else out

    # scans
    async def append_scan(self, record: ScanRecord) -> None:
        await self._append("scans", record.to_row())

    async def query_scans(
        self,
        limit: Optional[int] = None,
        origin: Optional[Origin] = None,
        outcome: Optional[Outcome] = None,
        since_ms: Optional[int] = None,
    ) -> List[ScanRecord]:
        out = [ScanRecord.from_row(r) for r in self._rows("scans")]
        if origin is not None:
            out = [x for x in out if x.origin is origin]
        if outcome is not None:
            out = [x for x in out if x.outcome is outcome]
        if since_ms is not None:
            out = [x for x in out if x.t >= since_ms]
        out.sort(key=lambda x: x.t, reverse=True)
        return out[:limit] if limit is not None else out

    # run state
    async def save_run_state(self, state: ScannerRunState) -> None:
        state.updated_at = now_utc_ms()
        tmp = self.run_state_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(state.to_row(), ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.run_state_path)

    async def load_run_state(self) -> Optional[ScannerRunState]:
        if not self.run_state_path.exists():
            return None
        return ScannerRunState.from_row(json.loads(self.run_state_path.read_text(encoding="utf-8")))

    # retention
    async def prune(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        """Drop price rows and scan records past retention. Signals are kept."""
        now_ms = now_ms if now_ms is not None else now_utc_ms()
        removed: Dict[str, int] = {}
        for table, days in (("prices", self.price_retention_days), ("scans", self.scan_retention_days)):
            path = self._table(table)
            rows = self._rows(table)
            cutoff = now_ms - days * DAY_MS
            keep = [r for r in rows if int(r.get("t", 0)) >= cutoff]
            removed[table] = len(rows) - len(keep)
            if removed[table] and path.exists():
                rewrite_jsonl(path, keep)
        log.info(f"[{self.symbol}] pruned prices={removed['prices']} scans={removed['scans']}")
        return removed


StoreFactory = Callable[[str], Store]
