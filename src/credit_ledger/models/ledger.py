from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    RESERVATION = "reservation"
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Audit record of one engine action, persisted to DB and mirrored to
    the JSON-lines file.

    Entries describe what happened; balances are only ever derived from
    `CreditTransaction` rows. `transaction_id` and `reservation_id` are
    lifted out of `details` so a hold can be traced from reserve to its
    outcome with a single indexed query.
    """

    collection_name: ClassVar[str] = "credit_ledger_events"
    indexes: ClassVar[list] = [
        {"fields": [("account_id", 1), ("created_at", -1)], "unique": False},
        {"fields": [("reservation_id", 1)], "unique": False, "sparse": True},
    ]

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    reservation_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Caller supplied id (e.g. X-Request-Id) tying entries of one request together.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
