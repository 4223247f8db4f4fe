from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .ledger_engine import LedgerEngine


logger = logging.getLogger(__name__)


class ReservationSweeper:
    """
    Runs `LedgerEngine.sweep_expired` on a fixed interval.

    Typically started by a scheduler or a worker process; `run_once` is the
    entry point for cron-style schedulers that own the cadence themselves.
    """

    def __init__(self, engine: LedgerEngine, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._engine = engine
        self._interval = interval_seconds

    async def run_once(self) -> int:
        return await self._engine.sweep_expired()

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> int:
        """
        Sweep until `stop` is set. Returns the total number of holds expired.

        A failed sweep is logged and retried on the next tick.
        """
        stop = stop or asyncio.Event()
        total = 0
        while not stop.is_set():
            try:
                total += await self.run_once()
            except Exception:
                logger.exception("Reservation expiry sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        return total


def main() -> None:
    """Console entry point: sweep expired reservations on the configured interval."""
    from ..api.router import get_ledger_engine
    from ..config import settings

    async def _run() -> None:
        engine = get_ledger_engine()
        await engine.db.ensure_indexes()
        sweeper = ReservationSweeper(engine, interval_seconds=settings.SWEEP_INTERVAL_SECONDS)
        await sweeper.run_forever()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
