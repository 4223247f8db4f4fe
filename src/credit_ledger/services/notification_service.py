from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue


class NotificationService:
    """
    Decides when a debit warrants a low-balance alert and dispatches it.

    An alert fires when a debit moves the balance from above a threshold to
    at-or-below it. Only the highest threshold crossed is reported, and an
    account receives at most one alert per cooldown window.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        thresholds: Sequence[int] = (50, 25, 10),
        cooldown: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db
        self._queue = queue
        self._thresholds = sorted(thresholds, reverse=True)
        self._cooldown = cooldown
        self._clock = clock
        # Cooldown check and insert must not interleave within this process.
        self._dispatch_lock = asyncio.Lock()

    def crossed_threshold(self, previous_balance: int, new_balance: int) -> Optional[int]:
        for threshold in self._thresholds:
            if previous_balance > threshold >= new_balance:
                return threshold
        return None

    async def notify_low_balance(
        self, account_id: str, previous_balance: int, new_balance: int
    ) -> Optional[NotificationEvent]:
        """
        Queue an alert if the debit crossed a threshold outside the cooldown.

        A failed enqueue is recorded as a FAILED event and re-raised.
        """
        threshold = self.crossed_threshold(previous_balance, new_balance)
        if threshold is None:
            return None

        async with self._dispatch_lock:
            now = self._clock()
            latest = await self._db.get_latest_notification(
                account_id, NotificationType.LOW_BALANCE
            )
            if latest is not None and latest.created_at > now - self._cooldown:
                return None

            event = NotificationEvent(
                account_id=account_id,
                notification_type=NotificationType.LOW_BALANCE,
                threshold=threshold,
                balance=new_balance,
                created_at=now,
            )
            try:
                await self._queue.enqueue(event.to_message())
            except Exception as exc:
                event.status = NotificationStatus.FAILED
                event.error_message = str(exc)
                await self._db.add_notification_event(event)
                raise
            return await self._db.add_notification_event(event)
