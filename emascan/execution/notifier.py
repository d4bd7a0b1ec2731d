# emascan/execution/notifier.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from emascan.core.models import CrossoverKind, Origin, Signal
from emascan.utils.helpers import get_logger, ms_to_iso

log = get_logger(__name__)

EVENT_CROSSOVER = "ema_crossover"


@dataclass(frozen=True)
class ScanContext:
    origin: Origin
    series_length: int
    source_latency_ms: Optional[int]
    fast_period: int
    slow_period: int


def build_payload(signal: Signal, ctx: ScanContext) -> Dict[str, Any]:
    return {
        "event": EVENT_CROSSOVER,
        "symbol": signal.symbol,
        "signal": {
            "type": signal.kind.value,
            "direction": "up" if signal.kind is CrossoverKind.BULLISH else "down",
        },
        "price": signal.price,
        "ema": {
            "fast": {"period": ctx.fast_period, "current": signal.fast_ema, "previous": signal.prev_fast_ema},
            "slow": {"period": ctx.slow_period, "current": signal.slow_ema, "previous": signal.prev_slow_ema},
        },
        "scan": {
            "origin": ctx.origin.value,
            "series_length": ctx.series_length,
            "source_latency_ms": ctx.source_latency_ms,
        },
        "t": signal.t,
        "timestamp": ms_to_iso(signal.t),
    }


class WebhookNotifier:
    """
    Fire-and-forget JSON POST of crossover events. One attempt per signal;
    any failure is reported to the caller as False, never raised.
    """
    def __init__(self, url: str, timeout_s: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)
        return self._client

    async def post(self, url: str, payload: Dict[str, Any]) -> Tuple[int, str]:
        resp = await self._get_client().post(url, json=payload)
        return resp.status_code, resp.text

    async def send_signal(self, signal: Signal, ctx: ScanContext) -> bool:
        try:
            status, body = await self.post(self.url, build_payload(signal, ctx))
        except httpx.HTTPError as e:
            log.warning(f"[{signal.symbol}] webhook delivery failed: {e}")
            return False
        if status >= 400:
            log.warning(f"[{signal.symbol}] webhook answered {status}: {body[:200]}")
            return False
        log.info(f"[{signal.symbol}] webhook sent ({signal.kind.value}, status={status})")
        return True

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
