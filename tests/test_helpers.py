import asyncio
from datetime import datetime, timezone

import pytest

from emascan.utils import helpers as H


def test_time_conversions():
    assert H.to_utc_ms(1_700_000_000_000) == 1_700_000_000_000
    assert H.to_utc_ms("2023-11-14T22:13:20Z") == 1_700_000_000_000
    assert H.to_utc_ms(datetime(2023, 11, 14, 22, 13, 20)) == 1_700_000_000_000  # naive -> UTC
    assert H.to_utc_ms(datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)) == 1_700_000_000_000
    assert H.ms_to_iso(1_700_000_000_000) == "2023-11-14T22:13:20+00:00"
    assert H.ms_to_iso(None) is None


@pytest.mark.asyncio
async def test_retry_backs_off_then_succeeds(monkeypatch):
    sleeps = []

    async def fake_sleep(t):
        sleeps.append(float(t))

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    monkeypatch.setattr("random.random", lambda: 0.0)

    calls = {"n": 0}

    @H.async_retry(attempts=3, base_delay=0.25)
    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("429")
        return "ok"

    assert await flaky() == "ok"
    assert sleeps == [0.25, 0.5]


@pytest.mark.asyncio
async def test_single_attempt_raises_immediately():
    calls = {"n": 0}

    @H.async_retry(attempts=1)
    async def boom():
        calls["n"] += 1
        raise ValueError("x")

    with pytest.raises(ValueError):
        await boom()
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_keyed_locks_are_per_key():
    locks = H.KeyedLocks()
    async with locks.hold("SOL-USD"):
        assert locks.locked("SOL-USD")
        assert not locks.locked("ETH-USD")
        async with locks.try_hold("SOL-USD") as got:
            assert got is False
        async with locks.try_hold("ETH-USD") as got:
            assert got is True
    assert not locks.locked("SOL-USD")


@pytest.mark.asyncio
async def test_file_lock_is_exclusive(tmp_path):
    path = tmp_path / "scan.lock"
    async with H.file_lock(path) as got:
        assert got is True
        async with H.file_lock(path, wait=False) as again:
            assert again is False
    async with H.file_lock(path, wait=False) as got:
        assert got is True
    async with H.file_lock(None, wait=False) as got:
        assert got is True


def test_json_log_format():
    import logging

    rec = logging.LogRecord("emascan.x", logging.INFO, __file__, 1, "scan done %s", ("SOL-USD",), None)
    out = H.JsonFormatter().format(rec)
    assert '"msg": "scan done SOL-USD"' in out and '"level": "INFO"' in out
