from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SwitchPlanRequest(BaseModel):
    plan_code: str = Field(alias="planCode")


class CreditStateResponse(BaseModel):
    user_id: str
    credit_balance: int
    plan_code: str


class PlanResponse(BaseModel):
    code: str
    name: str
    credits: int
    active: bool


class LedgerEntryResponse(BaseModel):
    id: str
    type: str
    status: str
    amount: int
    reason: str
    pricing_version: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class LedgerListResponse(BaseModel):
    user_id: str
    entries: List[LedgerEntryResponse]


class RerollResponse(BaseModel):
    user_id: str
    cycle: str
    plan_code: str
    credit_balance: int
    skipped_reason: Optional[str] = None


class ReconcileResponse(BaseModel):
    user_id: str
    calculated_balance: int
    previous_balance: Optional[int] = None
    total_grants: int
    total_debits: int
    total_refunds: int
    corrected: bool
