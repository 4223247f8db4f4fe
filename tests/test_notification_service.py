from __future__ import annotations

import asyncio
import logging

import pytest

from credit_ledger.models.notification import NotificationStatus, NotificationType
from credit_ledger.notifications.queue import AsyncNotificationQueue, LoggingNotificationQueue
from credit_ledger.services.notification_service import NotificationService


class _FailingQueue(AsyncNotificationQueue):
    async def enqueue(self, payload):
        raise ConnectionError("broker unreachable")


@pytest.mark.parametrize(
    "previous, new, expected",
    [
        (60, 45, 50),
        (60, 50, 50),
        (50, 45, None),
        (30, 20, 25),
        (100, 5, 50),
        (12, 10, 10),
        (10, 0, None),
        (20, 40, None),
    ],
)
def test_crossed_threshold(notifications, previous, new, expected):
    assert notifications.crossed_threshold(previous, new) == expected


@pytest.mark.asyncio
async def test_low_balance_event_is_stored_and_enqueued(notifications, db, queue, clock):
    event = await notifications.notify_low_balance("acct-1", 60, 40)

    assert event is not None
    assert event.notification_type is NotificationType.LOW_BALANCE
    assert event.status is NotificationStatus.QUEUED
    assert (event.threshold, event.balance) == (50, 40)

    stored = await db.get_latest_notification("acct-1", NotificationType.LOW_BALANCE)
    assert stored.id == event.id
    assert queue.drain() == [
        {
            "type": "low_balance",
            "account_id": "acct-1",
            "current_balance": 40,
            "threshold": 50,
            "created_at": clock.now.isoformat(),
        }
    ]
    assert queue.messages == []


@pytest.mark.asyncio
async def test_no_event_without_crossing(notifications, queue):
    assert await notifications.notify_low_balance("acct-1", 200, 100) is None
    assert queue.messages == []


@pytest.mark.asyncio
async def test_alerts_respect_cooldown(notifications, queue, clock):
    assert await notifications.notify_low_balance("acct-1", 60, 40) is not None
    clock.advance(days=6, hours=23)
    assert await notifications.notify_low_balance("acct-1", 40, 20) is None

    # Cooldown is per account
    assert await notifications.notify_low_balance("acct-2", 40, 20) is not None

    clock.advance(hours=1)
    event = await notifications.notify_low_balance("acct-1", 20, 5)
    assert event is not None
    assert event.threshold == 10
    assert len(queue.messages) == 3


@pytest.mark.asyncio
async def test_concurrent_debits_raise_one_alert_per_cooldown(notifications, db, queue):
    events = await asyncio.gather(
        notifications.notify_low_balance("acct-1", 60, 40),
        notifications.notify_low_balance("acct-1", 60, 45),
        notifications.notify_low_balance("acct-1", 55, 30),
    )

    assert sum(1 for e in events if e is not None) == 1
    assert len(queue.messages) == 1
    stored = await db.get_latest_notification("acct-1", NotificationType.LOW_BALANCE)
    assert stored.id == next(e for e in events if e is not None).id


@pytest.mark.asyncio
async def test_failed_dispatch_is_recorded_without_cooldown(db, queue, clock):
    failing = NotificationService(db=db, queue=_FailingQueue(), clock=clock)
    with pytest.raises(ConnectionError):
        await failing.notify_low_balance("acct-1", 60, 40)

    assert await db.get_latest_notification("acct-1", NotificationType.LOW_BALANCE) is None

    working = NotificationService(db=db, queue=queue, clock=clock)
    assert await working.notify_low_balance("acct-1", 60, 40) is not None


@pytest.mark.asyncio
async def test_custom_thresholds(db, queue, clock):
    service = NotificationService(db=db, queue=queue, thresholds=[5, 100], clock=clock)
    assert service.crossed_threshold(150, 90) == 100
    assert service.crossed_threshold(90, 4) == 5
    event = await service.notify_low_balance("acct-1", 150, 90)
    assert event.threshold == 100


@pytest.mark.asyncio
async def test_logging_queue_emits_alerts(caplog):
    with caplog.at_level(logging.INFO, logger="credit_ledger.notifications.queue"):
        await LoggingNotificationQueue().enqueue({"type": "low_balance", "account_id": "acct-1"})
    assert "Account alert low_balance for acct-1" in caplog.text
