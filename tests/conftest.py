from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.notifications.queue import InMemoryNotificationQueue
from credit_ledger.services.ledger_engine import LedgerEngine
from credit_ledger.services.notification_service import NotificationService


class FakeClock:
    """Manually advanced clock shared by the engine and notification service."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def queue() -> InMemoryNotificationQueue:
    return InMemoryNotificationQueue()


@pytest.fixture
def notifications(db, queue, clock) -> NotificationService:
    return NotificationService(db=db, queue=queue, clock=clock)


@pytest.fixture
def engine(db, ledger, notifications, clock) -> LedgerEngine:
    return LedgerEngine(db=db, ledger=ledger, notifications=notifications, clock=clock)
