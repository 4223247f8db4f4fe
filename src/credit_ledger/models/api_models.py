from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .reservation import ReservationStatus
from .transaction import SourcePlatform, TransactionKind


class CreditMovementRequest(BaseModel):
    amount: int = Field(gt=0)
    kind: TransactionKind
    source_platform: SourcePlatform
    idempotency_key: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    description: Optional[str] = None


class ReserveRequest(BaseModel):
    amount: int = Field(gt=0)
    purpose: str = Field(min_length=1)
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class CommitRequest(BaseModel):
    kind: TransactionKind
    source_platform: SourcePlatform
    idempotency_key: Optional[str] = None
    description: Optional[str] = None


class BalanceChangeResponse(BaseModel):
    account_id: str
    new_balance: int
    transaction_id: Optional[str]
    replayed: bool = False


class ReservationResponse(BaseModel):
    reservation_id: str
    account_id: str
    amount: int
    status: ReservationStatus
    expires_at: datetime


class SweepResponse(BaseModel):
    expired: int
