# config/scanner.py
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from config.settings import Settings, get_settings
from emascan.utils.helpers import load_config


class ConfigError(ValueError):
    """Raised at startup when scanner configuration is missing or malformed."""


@dataclass(frozen=True)
class ScannerConfig:
    symbols: tuple[str, ...] = ("SOL-USD",)
    fast_period: int = 12
    slow_period: int = 25
    scan_interval_ms: int = 900_000
    granularity_s: int = 900
    historical_points: int = 100
    stored_lookback: int = 50
    backfill_surplus: int = 10
    fetch_timeout_s: float = 10.0
    webhook_url: Optional[str] = None

    @property
    def scan_interval_s(self) -> float:
        return self.scan_interval_ms / 1000.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ScannerConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown scanner config keys: {', '.join(unknown)}")

        kw: dict[str, Any] = {}
        try:
            for k, v in data.items():
                if v is None:
                    continue
                if k == "symbols":
                    kw[k] = tuple(str(x).upper() for x in ([v] if isinstance(v, str) else v))
                elif k == "webhook_url":
                    kw[k] = str(v).strip() or None
                elif k == "fetch_timeout_s":
                    kw[k] = float(v)
                else:
                    kw[k] = int(v)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Malformed scanner config: {e}") from e

        cfg = cls(**kw)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not self.symbols:
            raise ConfigError("At least one symbol is required")
        if self.fast_period < 1 or self.slow_period < 1:
            raise ConfigError("EMA periods must be >= 1")
        if self.fast_period >= self.slow_period:
            raise ConfigError(
                f"fast_period ({self.fast_period}) must be smaller than slow_period ({self.slow_period})"
            )
        if self.scan_interval_ms <= 0:
            raise ConfigError("scan_interval_ms must be > 0")
        if self.granularity_s <= 0:
            raise ConfigError("granularity_s must be > 0")
        if self.historical_points < 1 or self.stored_lookback < 1 or self.backfill_surplus < 0:
            raise ConfigError("historical_points/stored_lookback must be >= 1 and backfill_surplus >= 0")
        if self.fetch_timeout_s <= 0:
            raise ConfigError("fetch_timeout_s must be > 0")
        if self.webhook_url:
            u = urlparse(self.webhook_url)
            if u.scheme not in ("http", "https") or not u.netloc:
                raise ConfigError(f"Invalid webhook URL: {self.webhook_url!r}")


def validate_settings(settings: Settings) -> None:
    """Fail fast on a missing or malformed price-source endpoint."""
    u = urlparse(settings.api.base_url or "")
    if u.scheme not in ("http", "https") or not u.netloc:
        raise ConfigError(
            f"COINBASE_API_BASE_URL is missing or malformed: {settings.api.base_url!r}"
        )
    if settings.api.http_timeout <= 0:
        raise ConfigError("HTTP_TIMEOUT must be > 0")


def load_scanner_config(settings: Optional[Settings] = None) -> ScannerConfig:
    """Read configs/scanner.yml (+ SCANNER_* env overrides) into a validated ScannerConfig."""
    s = settings or get_settings()
    validate_settings(s)
    return ScannerConfig.from_mapping(load_config("scanner", s))
