from __future__ import annotations

import math
from datetime import datetime
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator

from .base import DBSerializableModel, utcnow


class UserAccount(DBSerializableModel):
    """
    Per-user credit account. `credit_balance` is a cached view over the
    user's ledger; only the ledger store writes it.

    `credit_balance` is optional so a corrupt document (missing or
    non-numeric balance) can still be loaded and repaired.
    """

    collection_name: ClassVar[str] = "users"

    id: str = Field(description="Authenticated user id (uid).")
    credit_balance: Optional[int] = None
    plan_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("credit_balance", mode="before")
    @classmethod
    def _drop_corrupt_balance(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, float):
            if math.isfinite(value) and value.is_integer():
                return int(value)
            return None
        if not isinstance(value, int):
            return None
        return value

    @property
    def is_balance_valid(self) -> bool:
        return self.credit_balance is not None


class UserCreditState(BaseModel):
    credit_balance: int
    plan_code: str
