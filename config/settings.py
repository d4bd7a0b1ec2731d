# config/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path


class Env(str, Enum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


# Resolve project root from this file’s location
ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = Path(os.getenv("DATA_DIR", str(ROOT_DIR / "data")))
LOGS_DIR = DATA_DIR / "logs"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = os.getenv("LOG_LEVEL", "INFO")
    json: bool = bool(int(os.getenv("LOG_JSON", "0")))          # 1 -> JSON logs
    to_file: bool = bool(int(os.getenv("LOG_TO_FILE", "1")))    # 1 -> write file
    dir: Path = LOGS_DIR
    filename: str = os.getenv("LOG_FILE_NAME", "emascan.log")


@dataclass(frozen=True)
class APISettings:
    # Coinbase Exchange public market data
    exchange: str = os.getenv("EXCHANGE", "coinbase")
    base_url: str = os.getenv("COINBASE_API_BASE_URL", "https://api.exchange.coinbase.com")

    # Networking
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))    # seconds
    http_conn_limit: int = int(os.getenv("HTTP_CONN_LIMIT", "20"))
    http_retries: int = int(os.getenv("HTTP_RETRIES", "1"))         # 1 -> single attempt
    http_backoff_base: float = float(os.getenv("HTTP_BACKOFF_BASE", "0.25"))  # seconds

    ssl_trust_env: bool = bool(int(os.getenv("SSL_TRUST_ENV", "0")))   # ignore shell SSL vars by default
    ssl_verify: str = os.getenv("SSL_VERIFY", "certifi")               # certifi | system | false | path
    ssl_verify_path: str = os.getenv("SSL_VERIFY_PATH", "")            # used if SSL_VERIFY=path


@dataclass(frozen=True)
class PersistSettings:
    fmt: str = os.getenv("PERSIST_FMT", "jsonl")  # jsonl.gz | jsonl
    dir_store: Path = (DATA_DIR / "store")
    # Retention used by `prune`
    price_retention_days: int = int(os.getenv("PRICE_RETENTION_DAYS", "30"))
    scan_retention_days: int = int(os.getenv("SCAN_RETENTION_DAYS", "7"))


@dataclass(frozen=True)
class Settings:
    env: Env = Env(os.getenv("ENV", "dev"))
    root_dir: Path = ROOT_DIR
    data_dir: Path = DATA_DIR
    logs_dir: Path = LOGS_DIR

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: APISettings = field(default_factory=APISettings)
    persist: PersistSettings = field(default_factory=PersistSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache settings exactly once per process.
    Also ensures expected directories exist.
    """
    s = Settings()
    s.logs_dir.mkdir(parents=True, exist_ok=True)
    s.data_dir.mkdir(parents=True, exist_ok=True)
    return s
