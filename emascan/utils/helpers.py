# emascan/utils/helpers.py
from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import random
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, Optional, Type

import yaml

from config.settings import get_settings, Settings


# -----------------------
# Time utilities
# -----------------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_ms() -> int:
    """Return current UTC epoch milliseconds as int."""
    return int(utc_now().timestamp() * 1000)


def to_utc_ms(x) -> int:
    """Convert an ISO string, datetime or numeric ms to UTC epoch ms (int).

    If ``x`` is already an int/float, it is returned as int(ms).
    Otherwise, parse an ISO 8601 string (tolerates trailing 'Z') and return ms.
    Naive datetimes are treated as UTC.
    """
    if isinstance(x, (int, float)):
        return int(x)
    if isinstance(x, datetime):
        dt = x
    else:
        dt = datetime.fromisoformat(str(x).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_iso(t_ms: Optional[int]) -> Optional[str]:
    if t_ms is None:
        return None
    return datetime.fromtimestamp(t_ms / 1000, tz=timezone.utc).isoformat()


# -----------------------
# Per-key single-flight guard
# -----------------------
class KeyedLocks:
    """
    One asyncio.Lock per key (e.g. trading symbol).

    `hold(key)` waits for the lock; `try_hold(key)` yields False immediately
    when another holder is in flight, so callers can drop the contender.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: str) -> bool:
        return self._lock_for(key).locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._lock_for(key):
            yield

    @asynccontextmanager
    async def try_hold(self, key: str) -> AsyncIterator[bool]:
        lock = self._lock_for(key)
        if lock.locked():
            yield False
            return
        async with lock:
            yield True


def _try_flock(fd: int) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


@asynccontextmanager
async def file_lock(path: Optional[Path], wait: bool = True, poll_s: float = 0.05) -> AsyncIterator[bool]:
    """
    Exclusive advisory lock (flock) on `path`, shared by every process on the host.

    wait=True polls until the lock is free and yields True; wait=False yields
    False at once when another holder has it. path=None is a no-op that yields True.
    """
    if path is None:
        yield True
        return
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        acquired = _try_flock(fd)
        while wait and not acquired:
            await asyncio.sleep(poll_s)
            acquired = _try_flock(fd)
        try:
            yield acquired
        finally:
            if acquired:
                fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


# -----------------------
# Config loader (YAML with env overrides)
# -----------------------
def _coerce_env_value(raw: str):
    """Coerce env string to bool/int/float/list via YAML scalars; else raw string."""
    s = raw.strip()
    if s == "":
        return None
    try:
        return yaml.safe_load(s)
    except yaml.YAMLError:
        return s


def load_config(name: str, settings: Optional[Settings] = None) -> dict:
    """Load YAML config from `configs/{name}.yml` and apply env overrides.

    Env overrides apply to flat top-level keys using the pattern
    `{NAME}_{KEY}` uppercased. For example, `scanner.yml` key `fast_period`
    can be overridden with env `SCANNER_FAST_PERIOD=9`.

    Raises FileNotFoundError with a helpful message if the config file is missing.
    """
    s = settings or get_settings()
    path = s.root_dir / "configs" / f"{name}.yml"
    if not path.exists():
        raise FileNotFoundError(
            f"Config '{name}' not found at {path}. Create it or use the bundled configs/scanner.yml."
        )
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    data: dict = dict(loaded or {})

    prefix = name.upper() + "_"
    for k in list(data.keys()):
        env_key = prefix + k.upper()
        if env_key in os.environ:
            data[k] = _coerce_env_value(os.environ[env_key])

    return data


# -----------------------
# Logging setup
# -----------------------
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(settings: Optional[Settings] = None) -> None:
    s = settings or get_settings()

    root = logging.getLogger()
    root.setLevel(getattr(logging, s.logging.level.upper(), logging.INFO))
    # drop existing handlers to avoid duplicates in notebooks / reloads
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = JsonFormatter() if s.logging.json else logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(root.level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    # Rotating file handler (optional)
    if s.logging.to_file:
        s.logs_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(s.logs_dir / s.logging.filename, maxBytes=10_000_000, backupCount=5)
        fh.setLevel(root.level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    # Ensure logging is configured at first call
    if not logging.getLogger().handlers:
        setup_logging()
    return logging.getLogger(name)


# -----------------------
# Async retry with jitter (exponential backoff)
# -----------------------
def async_retry(
    exceptions: tuple[Type[BaseException], ...] = (Exception,),
    attempts: int = 3,
    base_delay: float = 0.25,
    max_delay: float = 5.0,
    jitter: float = 0.1,
) -> Callable[[Callable[..., Coroutine[Any, Any, Any]]], Callable[..., Coroutine[Any, Any, Any]]]:
    """
    Decorator for async functions. Retries on `exceptions` with exponential backoff + jitter.
    `attempts=1` calls the function exactly once.
    """
    def decorator(func: Callable[..., Coroutine[Any, Any, Any]]):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, max(1, attempts) + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions:
                    if attempt >= attempts:
                        raise
                    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
                    delay += random.random() * jitter
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
