from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class MonthlyRerollResult(BaseModel):
    cycle: str
    plan_code: str
    credit_balance: int
    skipped_reason: Optional[str] = None


class ReconcileResult(BaseModel):
    calculated_balance: int
    total_debits: int
    total_grants: int
    total_refunds: int = 0
    debits_since_reset: int = 0
    previous_balance: Optional[int] = None
    corrected: bool = False


class PreAuthorization(BaseModel):
    """
    Outcome of a passed balance check. `idempotency_key` must be passed
    unchanged to the debit once the paid operation has succeeded.
    """

    cost: int
    idempotency_key: str
    reason: str
    provider: str
    operation: str
    pricing_version: str
    meta: Dict[str, Any] = Field(default_factory=dict)
