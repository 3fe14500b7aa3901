from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..logging.audit_logger import AuditLogger
from ..models.base import utcnow
from ..models.billing import MonthlyRerollResult, PreAuthorization, ReconcileResult
from ..models.ledger import LedgerEntry, LedgerWriteResult, WriteOutcome
from ..models.plan import Plan
from ..models.user import UserCreditState
from ..pricing.base import CostComputer, PricedRequest, PricingRegistry
from ..pricing.registry import default_registry
from .account_service import AccountService
from .ledger_store import LedgerStore
from .plan_catalog import PlanCatalog
from .plan_service import PlanService
from .preauth_service import PreAuthorizationGate
from .reconciliation_service import ReconciliationService
from .reroll_service import RerollService


logger = logging.getLogger(__name__)


class CreditService:
    """
    High-level credit and billing service used by the request-handling layer.

    Wires the plan catalog, ledger store and billing components over one
    `BaseDBManager` and exposes the operations callers need:

      - `ensure_user_init`, `ensure_monthly_reroll`
      - `pre_authorize` before a paid operation, `confirm_debit` after it
      - `switch_plan`, `reconcile`
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        cache: Optional[AsyncCacheBackend] = None,
        pricing: Optional[PricingRegistry] = None,
        free_plan_credits: int = 4120,
        plan_cache_ttl_seconds: int = 300,
        reconcile_on_confirm: bool = False,
        run_monthly_reroll_on_preauth: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._reconcile_on_confirm = reconcile_on_confirm

        self.plans = PlanCatalog(
            db, cache=cache, free_plan_credits=free_plan_credits,
            cache_ttl_seconds=plan_cache_ttl_seconds,
        )
        self.ledger = LedgerStore(db, audit)
        self.accounts = AccountService(self.ledger, self.plans)
        self.reconciler = ReconciliationService(self.ledger, audit)
        self.reroll = RerollService(self.ledger, self.plans, self.reconciler, clock=clock)
        self.plan_switcher = PlanService(self.ledger, self.plans, self.accounts)
        self.gate = PreAuthorizationGate(
            self.ledger,
            self.accounts,
            self.reroll,
            pricing or default_registry(),
            run_monthly_reroll=run_monthly_reroll_on_preauth,
        )

    @property
    def db(self) -> BaseDBManager:
        return self._db

    async def seed_plans(self) -> List[Plan]:
        plans = await self.plans.ensure_seeded()
        await self._audit.log_system("Plans seeded", {"plans": [p.code for p in plans]})
        return plans

    async def list_plans(self) -> Iterable[Plan]:
        return await self.plans.list_plans()

    async def ensure_user_init(self, user_id: str) -> UserCreditState:
        return await self.accounts.ensure_user_init(user_id)

    async def ensure_monthly_reroll(self, user_id: str) -> MonthlyRerollResult:
        return await self.reroll.ensure_monthly_reroll(user_id)

    async def get_state(self, user_id: str) -> UserCreditState:
        return await self.ledger.read_state(user_id)

    async def list_recent_entries(self, user_id: str, limit: int = 10) -> List[LedgerEntry]:
        return await self.ledger.list_recent_entries(user_id, limit=limit)

    async def pre_authorize(
        self,
        user_id: str,
        request: PricedRequest,
        compute_cost: Optional[CostComputer] = None,
    ) -> PreAuthorization:
        return await self.gate.pre_authorize(user_id, request, compute_cost=compute_cost)

    async def confirm_debit(
        self,
        user_id: str,
        idempotency_key: str,
        cost: int,
        reason: str,
        meta: Optional[Mapping[str, Any]] = None,
        pricing_version: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> WriteOutcome:
        """
        Charge a paid operation that has succeeded. Retries after an I/O
        failure must reuse the same `idempotency_key`; a repeated key is
        reported as `SKIPPED` and charges nothing.

        Raises `InsufficientBalanceAtDebit` if a concurrent debit has taken
        the balance below `cost` since pre-authorization.
        """
        if not cost or cost <= 0:
            return WriteOutcome.NO_COST
        if not idempotency_key:
            raise ValueError("idempotency_key is required")

        result = await self.ledger.debit(
            user_id,
            idempotency_key,
            cost,
            reason,
            meta=meta,
            pricing_version=pricing_version,
            correlation_id=correlation_id,
        )
        if result.outcome == WriteOutcome.WRITTEN and self._reconcile_on_confirm:
            await self.reconciler.reconcile(user_id)
        return result.outcome

    async def confirm_authorization(
        self,
        user_id: str,
        authorization: PreAuthorization,
        history_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> WriteOutcome:
        meta = {
            **authorization.meta,
            "historyId": history_id,
            "provider": authorization.provider,
            "pricingVersion": authorization.pricing_version,
        }
        return await self.confirm_debit(
            user_id,
            authorization.idempotency_key,
            authorization.cost,
            authorization.reason,
            meta=meta,
            pricing_version=authorization.pricing_version,
            correlation_id=correlation_id,
        )

    async def switch_plan(self, user_id: str, plan_code: str) -> UserCreditState:
        return await self.plan_switcher.switch_plan(user_id, plan_code)

    async def reconcile(self, user_id: str) -> ReconcileResult:
        return await self.reconciler.reconcile(user_id)

    async def grant_manual_credits(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        reason: str = "support.manual_grant",
        meta: Optional[Mapping[str, Any]] = None,
    ) -> LedgerWriteResult:
        await self.accounts.ensure_user_init(user_id)
        return await self.ledger.grant_manual_credits(user_id, entry_id, amount, reason, meta=meta)

    async def refund(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        reason: str,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> WriteOutcome:
        if not amount or amount <= 0:
            return WriteOutcome.SKIPPED
        result = await self.ledger.refund(user_id, entry_id, amount, reason, meta=meta)
        return result.outcome
