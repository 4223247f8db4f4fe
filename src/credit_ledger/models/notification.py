from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel


class NotificationType(str, Enum):
    LOW_BALANCE = "low_balance"


class NotificationStatus(str, Enum):
    QUEUED = "queued"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    Record of one low-balance alert.

    The newest queued event per account and type decides whether the
    cooldown window is still open. Failed dispatches are kept for
    auditing but do not start a cooldown.
    """

    collection_name: ClassVar[str] = "credit_notifications"
    indexes: ClassVar[list] = [
        {
            "fields": [
                ("account_id", 1),
                ("notification_type", 1),
                ("status", 1),
                ("created_at", -1),
            ],
            "unique": False,
        },
    ]

    id: Optional[str] = Field(default=None)
    account_id: str
    notification_type: NotificationType
    threshold: int = Field(description="Threshold the balance dropped to or below.")
    balance: int = Field(description="Balance right after the debit that crossed it.")
    status: NotificationStatus = NotificationStatus.QUEUED
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def to_message(self) -> Dict[str, Any]:
        """Queue payload handed to downstream delivery (email, push, ...)."""
        return {
            "type": self.notification_type.value,
            "account_id": self.account_id,
            "current_balance": self.balance,
            "threshold": self.threshold,
            "created_at": self.created_at.isoformat(),
        }
