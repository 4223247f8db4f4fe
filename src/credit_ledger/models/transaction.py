from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel


class TransactionKind(str, Enum):
    # Earning (portal)
    REFERRAL_PHOTO = "referral_photo"
    REFERRAL_VIDEO = "referral_video"
    REFERRAL_PREMIUM = "referral_premium"
    MILESTONE_5 = "milestone_5"
    MILESTONE_10 = "milestone_10"
    MILESTONE_25 = "milestone_25"
    MILESTONE_50 = "milestone_50"
    # Spending (portal)
    ASM_AI_TOOL = "asm_ai_tool"
    ASM_DISCOUNT = "asm_discount"
    ASM_FREE_SERVICE = "asm_free_service"
    # Spending (storywork)
    STORYWORK_BASIC_STORY = "storywork_basic_story"
    STORYWORK_VOICE_STORY = "storywork_voice_story"
    STORYWORK_CAROUSEL = "storywork_carousel"
    # Subscription
    SUBSCRIPTION_CREDIT = "subscription_credit"
    SUBSCRIPTION_BONUS = "subscription_bonus"
    # Admin / system
    ADJUSTMENT = "adjustment"
    EXPIRY = "expiry"
    REFUND = "refund"
    MIGRATION = "migration"

    @property
    def can_earn(self) -> bool:
        return self in _EARNING_KINDS

    @property
    def can_spend(self) -> bool:
        return self in _SPENDING_KINDS


_EARNING_KINDS = frozenset(
    {
        TransactionKind.REFERRAL_PHOTO,
        TransactionKind.REFERRAL_VIDEO,
        TransactionKind.REFERRAL_PREMIUM,
        TransactionKind.MILESTONE_5,
        TransactionKind.MILESTONE_10,
        TransactionKind.MILESTONE_25,
        TransactionKind.MILESTONE_50,
        TransactionKind.SUBSCRIPTION_CREDIT,
        TransactionKind.SUBSCRIPTION_BONUS,
        TransactionKind.ADJUSTMENT,
        TransactionKind.REFUND,
        TransactionKind.MIGRATION,
    }
)

_SPENDING_KINDS = frozenset(
    {
        TransactionKind.ASM_AI_TOOL,
        TransactionKind.ASM_DISCOUNT,
        TransactionKind.ASM_FREE_SERVICE,
        TransactionKind.STORYWORK_BASIC_STORY,
        TransactionKind.STORYWORK_VOICE_STORY,
        TransactionKind.STORYWORK_CAROUSEL,
        TransactionKind.EXPIRY,
        TransactionKind.ADJUSTMENT,
    }
)


class SourcePlatform(str, Enum):
    ASM_PORTAL = "asm_portal"
    STORYWORK = "storywork"
    SYSTEM = "system"


class CreditTransaction(DBSerializableModel):
    """
    Immutable ledger row. Positive amounts earn, negative amounts spend.

    `running_balance` is the account balance immediately after this row,
    captured under the same account lock as the balance update.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[list] = [
        {"fields": [("account_id", 1), ("created_at", 1)], "unique": False},
        {"fields": [("idempotency_key", 1)], "unique": True, "sparse": True},
    ]

    id: Optional[str] = Field(default=None)
    account_id: str
    amount: int
    running_balance: int = Field(ge=0)
    kind: TransactionKind
    source_platform: SourcePlatform
    description: Optional[str] = None
    idempotency_key: Optional[str] = Field(
        default=None,
        description="Caller-supplied deduplication token; globally unique when present.",
    )
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    reservation_id: Optional[str] = Field(
        default=None,
        description="Set on transactions produced by committing a reservation.",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LedgerResult(BaseModel):
    """
    Success payload of earn / spend / commit.

    `replayed` is True when an idempotency key matched an earlier call and
    nothing was written.
    """

    account_id: str
    new_balance: int
    transaction: CreditTransaction
    replayed: bool = False
