from __future__ import annotations

import asyncio
import logging

import pytest

from credit_ledger.services.ledger_engine import LedgerEngine
from credit_ledger.services.sweeper import ReservationSweeper


class _ScriptedEngine:
    """Stands in for LedgerEngine; replays a list of sweep outcomes."""

    def __init__(self, outcomes, stop: asyncio.Event) -> None:
        self._outcomes = list(outcomes)
        self._stop = stop
        self.calls = 0

    async def sweep_expired(self) -> int:
        self.calls += 1
        outcome = self._outcomes.pop(0)
        if not self._outcomes:
            self._stop.set()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.mark.asyncio
async def test_run_once_expires_stale_holds(engine, clock):
    await engine.earn("acct-1", 100, "adjustment", "system")
    await engine.earn("acct-2", 100, "adjustment", "system")
    await engine.reserve("acct-1", 10, purpose="a")
    await engine.reserve("acct-1", 10, purpose="b")
    await engine.reserve("acct-2", 10, purpose="c")
    clock.advance(minutes=16)
    await engine.reserve("acct-2", 10, purpose="fresh")

    sweeper = ReservationSweeper(engine, interval_seconds=60)
    assert await sweeper.run_once() == 3
    assert (await engine.get_balance("acct-2")).reserved == 10


@pytest.mark.asyncio
async def test_run_forever_accumulates_until_stopped():
    stop = asyncio.Event()
    engine = _ScriptedEngine([2, 0, 3], stop)
    sweeper = ReservationSweeper(engine, interval_seconds=0.01)

    assert await sweeper.run_forever(stop) == 5
    assert engine.calls == 3


@pytest.mark.asyncio
async def test_run_forever_survives_failed_sweep(caplog):
    stop = asyncio.Event()
    engine = _ScriptedEngine([RuntimeError("db down"), 4], stop)
    sweeper = ReservationSweeper(engine, interval_seconds=0.01)

    with caplog.at_level(logging.ERROR):
        assert await sweeper.run_forever(stop) == 4
    assert "Reservation expiry sweep failed" in caplog.text


@pytest.mark.asyncio
async def test_sweep_skips_busy_accounts(db, ledger, clock):
    engine = LedgerEngine(db=db, ledger=ledger, lock_timeout=0.05, clock=clock)
    await engine.earn("busy", 10, "adjustment", "system")
    await engine.earn("idle", 10, "adjustment", "system")
    await engine.reserve("busy", 5, purpose="x")
    await engine.reserve("idle", 5, purpose="y")
    clock.advance(hours=1)

    held = asyncio.Event()
    done = asyncio.Event()

    async def hold_lock() -> None:
        async with db.locked("busy", timeout=1.0):
            held.set()
            await done.wait()

    task = asyncio.create_task(hold_lock())
    await held.wait()
    try:
        assert await engine.sweep_expired() == 1
    finally:
        done.set()
        await task

    assert await engine.sweep_expired() == 1


def test_interval_must_be_positive(engine):
    with pytest.raises(ValueError):
        ReservationSweeper(engine, interval_seconds=0)
