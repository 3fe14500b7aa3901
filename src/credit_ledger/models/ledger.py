from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class LedgerEntryType(str, Enum):
    GRANT = "GRANT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"


class LedgerEntryStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    REVERSED = "REVERSED"


class WriteOutcome(str, Enum):
    WRITTEN = "WRITTEN"
    SKIPPED = "SKIPPED"
    NO_COST = "NO_COST"


class LedgerEntry(DBSerializableModel):
    """
    One immutable balance-affecting event. `id` is chosen by the caller and
    is unique per user, so it doubles as the idempotency key of the write.
    `amount` is unsigned; the sign follows from `type`.
    """

    collection_name: ClassVar[str] = "ledgers"

    id: str
    user_id: str
    type: LedgerEntryType
    status: LedgerEntryStatus = LedgerEntryStatus.CONFIRMED
    amount: int = Field(ge=0)
    reason: str
    pricing_version: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    is_manual: bool = Field(
        default=False,
        description="Out-of-band top-up (e.g. support credit); suppresses the monthly reroll.",
    )
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_confirmed(self) -> bool:
        return self.status == LedgerEntryStatus.CONFIRMED

    @property
    def signed_amount(self) -> int:
        if self.type == LedgerEntryType.DEBIT:
            return -self.amount
        return self.amount


class LedgerWriteResult(BaseModel):
    entry_id: str
    outcome: WriteOutcome
    credit_balance: int
    plan_code: str
