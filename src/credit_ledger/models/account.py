from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, Field, computed_field

from .base import DBSerializableModel


class CreditAccount(DBSerializableModel):
    """
    Unified credit account shared by every product surface.

    `balance` is a materialized projection of the transaction log and is
    only ever written by the ledger engine while the account is locked.
    """

    collection_name: ClassVar[str] = "credit_accounts"

    id: str
    balance: int = Field(default=0, ge=0)
    lifetime_earned: int = Field(
        default=0,
        ge=0,
        description="Sum of all earn transactions; used for tier calculations.",
    )
    lock_version: int = Field(
        default=0,
        description="Bumped whenever the account is taken for update.",
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AccountBalance(BaseModel):
    """
    Balance, reserved, and available credits for one account.
    """

    account_id: str
    balance: int
    reserved: int
    available: int
    lifetime_earned: int
    lifetime_spent: int


class LedgerTotals(BaseModel):
    """
    Aggregates recomputed straight from the transaction log.
    """

    net: int = 0
    earned: int = 0
    spent: int = 0
    count: int = 0


class ReconciliationReport(BaseModel):
    account_id: str
    stored_balance: int
    ledger_balance: int
    stored_lifetime_earned: int
    ledger_lifetime_earned: int
    transaction_count: int
    checked_at: datetime = Field(default_factory=datetime.utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def consistent(self) -> bool:
        return (
            self.stored_balance == self.ledger_balance
            and self.stored_lifetime_earned == self.ledger_lifetime_earned
        )
