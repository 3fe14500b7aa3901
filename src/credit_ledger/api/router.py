from __future__ import annotations

from typing import List

from fastapi import APIRouter, Query, Request

from ..models.api_models import (
    CreditStateResponse,
    LedgerEntryResponse,
    LedgerListResponse,
    PlanResponse,
    ReconcileResponse,
    RerollResponse,
    SwitchPlanRequest,
)
from ..services.credit_service import CreditService


router = APIRouter(prefix="/credits", tags=["credits"])


def _service(request: Request) -> CreditService:
    return request.app.state.credit_service


@router.get("/plans", response_model=List[PlanResponse])
async def list_plans(request: Request) -> List[PlanResponse]:
    plans = await _service(request).list_plans()
    return [
        PlanResponse(code=p.code, name=p.name, credits=p.credits, active=p.active)
        for p in plans
    ]


@router.get("/{user_id}", response_model=CreditStateResponse)
async def get_state(user_id: str, request: Request) -> CreditStateResponse:
    state = await _service(request).ensure_user_init(user_id)
    return CreditStateResponse(
        user_id=user_id, credit_balance=state.credit_balance, plan_code=state.plan_code
    )


@router.get("/{user_id}/ledgers", response_model=LedgerListResponse)
async def list_ledgers(
    user_id: str, request: Request, limit: int = Query(10, ge=1, le=100)
) -> LedgerListResponse:
    entries = await _service(request).list_recent_entries(user_id, limit=limit)
    return LedgerListResponse(
        user_id=user_id,
        entries=[
            LedgerEntryResponse(
                id=e.id,
                type=e.type.value,
                status=e.status.value,
                amount=e.amount,
                reason=e.reason,
                pricing_version=e.pricing_version,
                meta=e.meta,
                created_at=e.created_at,
            )
            for e in entries
        ],
    )


@router.post("/{user_id}/plan", response_model=CreditStateResponse)
async def switch_plan(
    user_id: str, payload: SwitchPlanRequest, request: Request
) -> CreditStateResponse:
    state = await _service(request).switch_plan(user_id, payload.plan_code)
    return CreditStateResponse(
        user_id=user_id, credit_balance=state.credit_balance, plan_code=state.plan_code
    )


@router.post("/{user_id}/reroll", response_model=RerollResponse)
async def reroll(user_id: str, request: Request) -> RerollResponse:
    service = _service(request)
    await service.ensure_user_init(user_id)
    result = await service.ensure_monthly_reroll(user_id)
    return RerollResponse(user_id=user_id, **result.model_dump())


@router.post("/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile(user_id: str, request: Request) -> ReconcileResponse:
    result = await _service(request).reconcile(user_id)
    return ReconcileResponse(
        user_id=user_id,
        calculated_balance=result.calculated_balance,
        previous_balance=result.previous_balance,
        total_grants=result.total_grants,
        total_debits=result.total_debits,
        total_refunds=result.total_refunds,
        corrected=result.corrected,
    )
