from __future__ import annotations

import logging

from ..models.ledger import LedgerEntryType
from ..models.user import UserCreditState
from .account_service import AccountService
from .ledger_store import LedgerStore
from .plan_catalog import PLANS_PRICING_VERSION, PlanCatalog


logger = logging.getLogger(__name__)


def plan_switch_entry_id(plan_code: str, occurrence: int = 1) -> str:
    base = f"PLAN_SWITCH_{plan_code}"
    return base if occurrence <= 1 else f"{base}#{occurrence}"


class PlanService:
    """
    Moves a user to a plan and resets the balance to its full allotment.

    The first switch to plan X is written as `PLAN_SWITCH_X`; switching to
    X again while on X is a no-op. Re-entering X after leaving it resets to
    X's allotment again under `PLAN_SWITCH_X#<n>`, so X -> Y -> X writes
    three grants. A switch is always a reset, never a top-up.
    """

    def __init__(
        self, ledger: LedgerStore, plans: PlanCatalog, accounts: AccountService
    ) -> None:
        self._ledger = ledger
        self._plans = plans
        self._accounts = accounts

    async def switch_plan(self, user_id: str, plan_code: str) -> UserCreditState:
        credits = await self._plans.require_credits(plan_code)
        state = await self._accounts.ensure_user_init(user_id)

        previous = await self._count_switches(user_id, plan_code)
        if previous and state.plan_code == plan_code:
            logger.info(
                "Plan switch skipped: already on plan",
                extra={"user_id": user_id, "plan_code": plan_code},
            )
            return state

        result = await self._ledger.grant_and_set_plan(
            user_id,
            plan_switch_entry_id(plan_code, previous + 1),
            credits,
            plan_code,
            "plan.switch",
            pricing_version=PLANS_PRICING_VERSION,
        )
        return UserCreditState(credit_balance=result.credit_balance, plan_code=result.plan_code)

    async def _count_switches(self, user_id: str, plan_code: str) -> int:
        base = plan_switch_entry_id(plan_code)
        entries = await self._ledger.list_entries(user_id)
        return sum(
            1
            for e in entries
            if e.type == LedgerEntryType.GRANT and (e.id == base or e.id.startswith(base + "#"))
        )
