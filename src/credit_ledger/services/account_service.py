from __future__ import annotations

import logging

from ..models.user import UserCreditState
from .ledger_store import LedgerStore
from .plan_catalog import FREE_PLAN_CODE, PlanCatalog


logger = logging.getLogger(__name__)


class AccountService:
    """
    Lazily creates and self-heals user accounts.
    """

    def __init__(self, ledger: LedgerStore, plans: PlanCatalog) -> None:
        self._ledger = ledger
        self._plans = plans

    async def ensure_user_init(self, user_id: str) -> UserCreditState:
        """
        Return the account's current balance and plan, creating the account
        on the FREE plan if it does not exist yet.

        An account whose balance is missing or corrupt is repaired to its
        plan's allotment through a reset grant. Idempotent, and concurrent
        calls for the same uid converge without locking.
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")

        account = await self._ledger.read_account(user_id)
        if account is None:
            account = await self._ledger.open_account(
                user_id, FREE_PLAN_CODE, self._plans.free_plan_credits
            )

        if not account.is_balance_valid:
            plan_code = account.plan_code or FREE_PLAN_CODE
            credits = await self._plans.lookup(plan_code)
            if credits is None:
                plan_code, credits = FREE_PLAN_CODE, self._plans.free_plan_credits
            logger.warning(
                "Repairing corrupt account balance",
                extra={"user_id": user_id, "plan_code": plan_code, "credits": credits},
            )
            # Keyed on the corrupt snapshot so concurrent repairs collapse to one grant
            repair_id = f"ACCOUNT_REPAIR_{account.updated_at.strftime('%Y%m%dT%H%M%S%f')}"
            result = await self._ledger.grant_and_set_plan(
                user_id,
                repair_id,
                credits,
                plan_code,
                "account.repair",
            )
            return UserCreditState(credit_balance=result.credit_balance, plan_code=result.plan_code)

        return UserCreditState(
            credit_balance=account.credit_balance,
            plan_code=account.plan_code or FREE_PLAN_CODE,
        )
