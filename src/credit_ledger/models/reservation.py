from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


class ReservationStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.PENDING


class Reservation(DBSerializableModel):
    """
    Time-boxed hold against an account's available balance.

    Holds never touch `CreditAccount.balance`; they only narrow what later
    spends and reservations may use until committed, released or expired.
    """

    collection_name: ClassVar[str] = "credit_reservations"
    indexes: ClassVar[list] = [
        {"fields": [("account_id", 1), ("status", 1)], "unique": False},
        {"fields": [("expires_at", 1)], "unique": False},
    ]

    id: Optional[str] = Field(default=None)
    account_id: str
    amount: int = Field(gt=0)
    purpose: str
    status: ReservationStatus = ReservationStatus.PENDING
    expires_at: datetime
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    committed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        """Pending and not yet past its expiry, i.e. still counted as held."""
        return self.status is ReservationStatus.PENDING and self.expires_at > now
