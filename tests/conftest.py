# tests/conftest.py
import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]  # project root
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings read the environment at import time: keep test runs out of ./data
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="emascan-test-"))
os.environ.setdefault("LOG_TO_FILE", "0")

import pytest  # noqa: E402

from config.scanner import ScannerConfig  # noqa: E402
from emascan.core.models import PricePoint  # noqa: E402
from emascan.ingestion.fetch_data import PriceQuote, PriceSource  # noqa: E402
from emascan.utils.persist import JsonlStore  # noqa: E402

SYMBOL = "SOL-USD"
T0 = 1_700_000_000_000   # epoch ms
STEP = 900_000           # 15m


class FakeSource(PriceSource):
    """In-process price source: scripted quotes, fixed candle list, optional failures."""

    def __init__(self, prices=(), candles=None, fail_current=None, fail_history=None, start_t=None):
        self.prices = list(prices)
        self.candles = list(candles or [])
        self.fail_current = fail_current
        self.fail_history = fail_history
        self.t = start_t if start_t is not None else T0 + 1_000 * STEP
        self.current_calls = 0
        self.history_calls = []

    async def get_current_price(self, symbol):
        self.current_calls += 1
        if self.fail_current is not None:
            exc, self.fail_current = self.fail_current, None
            raise exc
        price = self.prices.pop(0) if self.prices else 100.0
        self.t += STEP
        return PriceQuote(price=float(price), volume=1.0, t=self.t)

    async def get_historical_candles(self, symbol, start_s, end_s, granularity_s):
        self.history_calls.append((start_s, end_s, granularity_s))
        if self.fail_history is not None:
            raise self.fail_history
        return list(self.candles)


def make_candles(prices, start_t=T0, step=STEP):
    return [
        {"t": start_t + i * step, "o": p, "h": p, "l": p, "c": float(p), "v": 1.0}
        for i, p in enumerate(prices)
    ]


async def seed_prices(store, prices, start_t=T0, step=STEP):
    for i, p in enumerate(prices):
        await store.append_price(PricePoint(t=start_t + i * step, price=float(p), volume=1.0))


@pytest.fixture
def cfg():
    return ScannerConfig()


@pytest.fixture
def store(tmp_path):
    return JsonlStore(SYMBOL, base_dir=tmp_path)
