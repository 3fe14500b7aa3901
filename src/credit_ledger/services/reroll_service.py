from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from ..models.base import utcnow
from ..models.billing import MonthlyRerollResult
from ..models.ledger import LedgerEntryType
from .ledger_store import LedgerStore
from .plan_catalog import FREE_PLAN_CODE, PLANS_PRICING_VERSION, PlanCatalog
from .reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)

MANUAL_GRANT_SKIP = "manual_grant_this_cycle"


def cycle_key(now: datetime) -> str:
    now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def cycle_start(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def monthly_reset_entry_id(cycle: str) -> str:
    return f"PLAN_MONTHLY_RESET_{cycle}"


class RerollService:
    """
    Resets each account to its plan's allotment once per UTC calendar month.

    The reset entry id is derived from the cycle, so however often this is
    called (every paid-operation pre-check calls it) at most one reset is
    written per user per month.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        plans: PlanCatalog,
        reconciler: ReconciliationService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._plans = plans
        self._reconciler = reconciler
        self._clock = clock

    async def ensure_monthly_reroll(self, user_id: str) -> MonthlyRerollResult:
        now = self._clock()
        cycle = cycle_key(now)
        entry_id = monthly_reset_entry_id(cycle)

        if await self._ledger.get_entry(user_id, entry_id) is not None:
            state = await self._ledger.read_state(user_id)
            return MonthlyRerollResult(
                cycle=cycle, plan_code=state.plan_code, credit_balance=state.credit_balance
            )

        # A support top-up this cycle must not be clobbered by the reset.
        if await self._has_manual_grant(user_id, now):
            logger.info(
                "Monthly reroll skipped: manual grant this cycle",
                extra={"user_id": user_id, "cycle": cycle},
            )
            result = await self._reconciler.reconcile(user_id)
            state = await self._ledger.read_state(user_id)
            return MonthlyRerollResult(
                cycle=cycle,
                plan_code=state.plan_code,
                credit_balance=result.calculated_balance,
                skipped_reason=MANUAL_GRANT_SKIP,
            )

        state = await self._ledger.read_state(user_id)
        plan_code = state.plan_code
        credits = await self._plans.lookup(plan_code)
        if credits is None:
            logger.warning(
                "Unknown plan on account; rerolling to FREE",
                extra={"user_id": user_id, "plan_code": plan_code},
            )
            plan_code, credits = FREE_PLAN_CODE, self._plans.free_plan_credits

        written = await self._ledger.grant_and_set_plan(
            user_id,
            entry_id,
            credits,
            plan_code,
            "plan.monthly_reroll",
            meta={"cycle": cycle},
            pricing_version=PLANS_PRICING_VERSION,
        )
        return MonthlyRerollResult(
            cycle=cycle, plan_code=written.plan_code, credit_balance=written.credit_balance
        )

    async def _has_manual_grant(self, user_id: str, now: datetime) -> bool:
        entries = await self._ledger.list_entries(user_id, since=cycle_start(now))
        return any(
            e.type == LedgerEntryType.GRANT and e.is_confirmed and e.is_manual
            for e in entries
        )
