from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from ..errors import PaymentRequired
from ..models.billing import PreAuthorization
from ..pricing.base import CostComputer, PricedRequest, PricingRegistry, PricingResult
from .account_service import AccountService
from .ledger_store import LedgerStore
from .reroll_service import RerollService


logger = logging.getLogger(__name__)


class PreAuthorizationGate:
    """
    Admission control in front of a paid operation.

    Prices the request, makes sure the account exists (and has had this
    month's reroll), and checks the balance. Nothing is written: on success
    the caller receives a fresh idempotency key and must pass it unchanged
    to the debit once the paid operation has observably succeeded. An
    authorization that is never confirmed is simply never charged.

    The balance check here is advisory; the conditional decrement in
    `LedgerStore.debit` is what prevents overspending when two
    authorizations race.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        accounts: AccountService,
        reroll: RerollService,
        pricing: PricingRegistry,
        run_monthly_reroll: bool = True,
    ) -> None:
        self._ledger = ledger
        self._accounts = accounts
        self._reroll = reroll
        self._pricing = pricing
        self._run_monthly_reroll = run_monthly_reroll

    def price(
        self, request: PricedRequest, compute_cost: Optional[CostComputer] = None
    ) -> PricingResult:
        if compute_cost is not None:
            return compute_cost(request.params)
        return self._pricing.compute(request)

    async def pre_authorize(
        self,
        user_id: str,
        request: PricedRequest,
        compute_cost: Optional[CostComputer] = None,
    ) -> PreAuthorization:
        """
        Raises `UnsupportedModel` when the request cannot be priced and
        `PaymentRequired` when the balance does not cover the cost.
        """
        priced = self.price(request, compute_cost)

        await self._accounts.ensure_user_init(user_id)
        if self._run_monthly_reroll:
            await self._reroll.ensure_monthly_reroll(user_id)
        balance = await self._ledger.read_balance(user_id)

        logger.info(
            "Pre-check: computed cost and current balance",
            extra={
                "user_id": user_id,
                "provider": request.provider,
                "operation": request.operation,
                "cost": priced.cost,
                "balance": balance,
            },
        )
        if balance < priced.cost:
            raise PaymentRequired(required_credits=priced.cost, current_balance=balance)

        authorization = PreAuthorization(
            cost=priced.cost,
            idempotency_key=str(uuid4()),
            reason=f"{request.provider}.{request.operation}",
            provider=request.provider,
            operation=request.operation,
            pricing_version=priced.pricing_version,
            meta=priced.meta,
        )
        logger.info(
            "Pre-authorized (post-charge on success)",
            extra={"user_id": user_id, "idempotency_key": authorization.idempotency_key, "cost": priced.cost},
        )
        return authorization
