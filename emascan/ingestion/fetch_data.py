# emascan/ingestion/fetch_data.py
from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import certifi
import httpx

from config.settings import get_settings
from emascan.utils.helpers import async_retry, get_logger, now_utc_ms, utc_now

log = get_logger(__name__)
S = get_settings()


class PriceSourceError(RuntimeError):
    """Price feed call failed (transport error, non-2xx, timeout or bad payload)."""


@dataclass(frozen=True)
class PriceQuote:
    price: float
    volume: float
    t: int  # epoch ms of the fetch


# ---------------------------------
# Shared HTTP client
# ---------------------------------
_client_lock = asyncio.Lock()
_client: Optional[httpx.AsyncClient] = None


def _resolve_ssl_verify_and_trust_env() -> tuple[bool | str, bool]:
    """
    Decide how httpx should verify SSL and whether to respect shell env (SSL_CERT_FILE, etc.).
    """
    mode = S.api.ssl_verify
    verify: bool | str
    if mode == "false":
        verify = False
    elif mode == "path" and S.api.ssl_verify_path:
        verify = S.api.ssl_verify_path
    elif mode == "certifi":
        verify = certifi.where()
    else:
        # "system" or unknown -> system default
        verify = True
    return verify, S.api.ssl_trust_env


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client and not _client.is_closed:
        return _client

    async with _client_lock:
        if _client and not _client.is_closed:
            return _client

        limits = httpx.Limits(
            max_connections=S.api.http_conn_limit,
            max_keepalive_connections=S.api.http_conn_limit,
        )
        verify, trust_env = _resolve_ssl_verify_and_trust_env()

        _client = httpx.AsyncClient(
            base_url=S.api.base_url.rstrip("/"),
            timeout=S.api.http_timeout,
            limits=limits,
            verify=verify,
            trust_env=trust_env,
        )
        log.debug(f"Created httpx AsyncClient for {S.api.exchange} @ {S.api.base_url}")
        return _client


async def shutdown_session() -> None:
    """Gracefully close the shared client (call at app shutdown)."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        log.debug("Closed httpx AsyncClient")


@async_retry(attempts=S.api.http_retries, base_delay=S.api.http_backoff_base)
async def _get_json(path: str, params: Optional[Dict[str, Any]] = None) -> Any:
    client = await _get_client()
    resp = await client.get(path.lstrip("/"), params=params)
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise PriceSourceError(f"Coinbase API error: {e.response.status_code}") from e
    return resp.json()


# ---------------------------------
# Coinbase normalization
# ---------------------------------
def _norm_symbol_coinbase(symbol: str) -> str:
    """
    Normalize to Coinbase product_id format: BASE-QUOTE (e.g., SOL-USD / ETH-USDT)
    Accepts SOLUSD/SOLUSDT/SOL-USD, etc.
    """
    s = symbol.upper().replace(" ", "").replace("_", "").replace("/", "")
    if "-" in s:
        return s
    if s.endswith("USDT"):
        return f"{s[:-4]}-USDT"
    if s.endswith("USD"):
        return f"{s[:-3]}-USD"
    return f"{s}-USD"


def _parse_coinbase_candles(raw: List[List[Any]]) -> List[Dict[str, Any]]:
    """
    Coinbase candles schema: [time, low, high, open, close, volume]
    time is seconds (convert to ms). Output is ascending by time.
    """
    out: List[Dict[str, Any]] = []
    for r in raw:
        t, lo, hi, op, cl, vol = r[:6]
        out.append(
            {
                "t": int(t) * 1000,
                "o": float(op),
                "h": float(hi),
                "l": float(lo),
                "c": float(cl),
                "v": float(vol),
            }
        )
    out.sort(key=lambda x: x["t"])
    return out


def _parse_coinbase_ticker(raw: Dict[str, Any]) -> PriceQuote:
    price = raw.get("price") if isinstance(raw, dict) else None
    if price is None:
        raise PriceSourceError("Coinbase ticker response has no price")
    vol = raw.get("volume") or raw.get("volume_24h") or 0
    return PriceQuote(price=float(price), volume=float(vol), t=now_utc_ms())


# ---------------------------------
# Public ingestion API
# ---------------------------------
async def fetch_ticker(symbol: str) -> PriceQuote:
    """GET /products/{product_id}/ticker -> last trade price and 24h volume."""
    product_id = _norm_symbol_coinbase(symbol)
    raw = await _get_json(f"/products/{product_id}/ticker")
    return _parse_coinbase_ticker(raw)


async def fetch_candles(symbol: str, start_s: int, end_s: int, granularity_s: int) -> List[Dict[str, Any]]:
    """
    GET /products/{product_id}/candles for [start_s, end_s] (unix seconds).
    Returns {t,o,h,l,c,v} dicts, ascending by time.
    """
    product_id = _norm_symbol_coinbase(symbol)
    raw = await _get_json(
        f"/products/{product_id}/candles",
        {"start": int(start_s), "end": int(end_s), "granularity": int(granularity_s)},
    )
    if not isinstance(raw, list):
        log.warning(f"{product_id}: unexpected candles payload ({type(raw).__name__})")
        return []
    return _parse_coinbase_candles(raw)


# ---------------------------------
# Price source interface
# ---------------------------------
class PriceSource(abc.ABC):
    """What the scanner needs from a market-data feed."""

    @abc.abstractmethod
    async def get_current_price(self, symbol: str) -> PriceQuote:
        ...

    @abc.abstractmethod
    async def get_historical_candles(
        self, symbol: str, start_s: int, end_s: int, granularity_s: int
    ) -> List[Dict[str, Any]]:
        ...

    async def fetch_historical(self, symbol: str, points: int, granularity_s: int) -> List[Dict[str, Any]]:
        """The last `points` candles of `granularity_s`, ending now."""
        end_s = int(utc_now().timestamp())
        start_s = end_s - points * granularity_s
        return await self.get_historical_candles(symbol, start_s, end_s, granularity_s)


class CoinbasePriceSource(PriceSource):
    """Coinbase Exchange public REST with a bounded wait on every call."""

    def __init__(self, timeout_s: float = 10.0):
        self.timeout_s = timeout_s

    async def _bounded(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise PriceSourceError(f"{what} timed out after {self.timeout_s:.0f}s") from e
        except httpx.HTTPError as e:
            raise PriceSourceError(f"{what} failed: {e}") from e

    async def get_current_price(self, symbol: str) -> PriceQuote:
        return await self._bounded(fetch_ticker(symbol), f"ticker {symbol}")

    async def get_historical_candles(
        self, symbol: str, start_s: int, end_s: int, granularity_s: int
    ) -> List[Dict[str, Any]]:
        return await self._bounded(
            fetch_candles(symbol, start_s, end_s, granularity_s), f"candles {symbol}"
        )

    async def aclose(self) -> None:
        await shutdown_session()
