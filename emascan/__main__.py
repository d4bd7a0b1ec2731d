# emascan/__main__.py
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from typing import Any, List, Optional

from config.scanner import ConfigError
from config.settings import get_settings
from emascan.app.scheduler import ScannerService, describe_run_state
from emascan.core.models import CrossoverKind, Origin, Outcome, ScannerRunState
from emascan.pipeline.reports import collect_stats
from emascan.signals.trend import analyze_signal_history, trend_report
from emascan.utils.helpers import get_logger, now_utc_ms, setup_logging
from emascan.utils.persist import DAY_MS

log = get_logger(__name__)


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="emascan", description="EMA crossover scanner.")
    ap.add_argument("--symbol", default=None, help="Configured symbol (default: first in configs/scanner.yml)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run the scheduler for every configured symbol until interrupted")
    sub.add_parser("scan", help="Run one manual scan now")
    sub.add_parser("status", help="Persisted scheduler state, countdown and uptime")

    p = sub.add_parser("signals", help="Recent crossover signals")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--type", choices=[CrossoverKind.BULLISH.value, CrossoverKind.BEARISH.value], default=None)
    p.add_argument("--days", type=int, default=None, help="Only signals from the last N days")

    p = sub.add_parser("history", help="Scan history")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--origin", choices=[o.value for o in Origin], default=None)
    p.add_argument("--status", choices=[o.value for o in Outcome], default=None)

    sub.add_parser("stats", help="Scanner, scan and signal statistics")

    p = sub.add_parser("trend", help="Trend status, trade hints and annotated crossovers")
    p.add_argument("--limit", type=int, default=10)

    sub.add_parser("prune", help="Drop price rows and scan records past retention")
    return ap


async def _dispatch(args: argparse.Namespace, service: ScannerService) -> int:
    store = service.store(args.symbol)

    if args.cmd == "run":
        log.info(f"Scanner bootstrapped for {', '.join(service.symbols)}")
        await service.run_forever()
        return 0

    if args.cmd == "scan":
        try:
            await service.restore()
            result = await service.scan_now(args.symbol)
        finally:
            await service.aclose()
        _print(asdict(result))
        return 0 if result.success else 1

    if args.cmd == "status":
        state = await store.load_run_state() or ScannerRunState(symbol=store.symbol)
        _print(describe_run_state(state))
        return 0

    if args.cmd == "signals":
        since = now_utc_ms() - args.days * DAY_MS if args.days else None
        kind = CrossoverKind(args.type) if args.type else None
        signals = await store.query_signals(limit=args.limit, kind=kind, since_ms=since)
        _print([s.to_row() for s in signals])
        return 0

    if args.cmd == "history":
        scans = await store.query_scans(
            limit=args.limit,
            origin=Origin(args.origin) if args.origin else None,
            outcome=Outcome(args.status) if args.status else None,
        )
        _print([s.to_row() for s in scans])
        return 0

    if args.cmd == "stats":
        _print(await collect_stats(store))
        return 0

    if args.cmd == "trend":
        signals = await store.query_signals(limit=args.limit)
        report = trend_report(await store.latest_price(), signals)
        report["signal_history"] = analyze_signal_history(signals)
        _print(report)
        return 0

    if args.cmd == "prune":
        _print(await store.prune())
        return 0

    raise ValueError(f"unknown command {args.cmd}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    s = get_settings()
    setup_logging(s)
    try:
        service = ScannerService.from_config(s)
        return asyncio.run(_dispatch(args, service))
    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        return 2
    except KeyError as e:
        log.error(str(e.args[0]) if e.args else str(e))
        return 2
    except KeyboardInterrupt:
        log.info("Interrupted, scanner stopped")
        return 130


if __name__ == "__main__":
    sys.exit(main())
