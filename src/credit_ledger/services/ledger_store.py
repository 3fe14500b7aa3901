from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

from ..db.base import BaseDBManager
from ..errors import InsufficientBalanceAtDebit
from ..logging.audit_logger import AuditLogger
from ..models.ledger import LedgerEntry, LedgerEntryType, LedgerWriteResult, WriteOutcome
from ..models.user import UserAccount, UserCreditState
from .plan_catalog import FREE_PLAN_CODE


logger = logging.getLogger(__name__)

ACCOUNT_OPEN_ENTRY_ID = "ACCOUNT_OPEN"


def sanitize_meta(value: Any) -> Any:
    """Drop None values recursively so meta stores cleanly in any backend."""
    if isinstance(value, Mapping):
        return {str(k): sanitize_meta(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [sanitize_meta(v) for v in value if v is not None]
    return value


class LedgerStore:
    """
    Append-only per-user ledger plus the cached balance on the account.

    Every write is keyed by a caller-chosen entry id. A repeated id is a
    no-op reported as `SKIPPED`, which makes retries with the same id safe.
    The account's `credit_balance` and `plan_code` are written only here.
    """

    def __init__(self, db: BaseDBManager, audit: AuditLogger) -> None:
        self._db = db
        self._audit = audit

    # Reads
    async def read_balance(self, user_id: str) -> int:
        user = await self._db.get_user(user_id)
        if user is None or user.credit_balance is None:
            return 0
        return user.credit_balance

    async def read_account(self, user_id: str) -> Optional[UserAccount]:
        return await self._db.get_user(user_id)

    async def read_state(self, user_id: str) -> UserCreditState:
        return self._state(await self._db.get_user(user_id))

    async def get_entry(self, user_id: str, entry_id: str) -> Optional[LedgerEntry]:
        return await self._db.get_ledger_entry(user_id, entry_id)

    async def list_entries(
        self, user_id: str, since: Optional[datetime] = None
    ) -> List[LedgerEntry]:
        """Entries in creation order, optionally only those created at or after `since`."""
        return await self._db.list_ledger_entries(user_id, since=since)

    async def list_recent_entries(self, user_id: str, limit: int = 10) -> List[LedgerEntry]:
        return await self._db.list_ledger_entries(user_id, limit=limit, newest_first=True)

    # Writes
    async def open_account(self, user_id: str, plan_code: str, credits: int) -> UserAccount:
        """
        Create the account with its opening grant. Concurrent callers
        converge: the grant id is fixed and account creation is
        create-if-absent, so neither overwrites a later balance.
        """
        entry = LedgerEntry(
            id=ACCOUNT_OPEN_ENTRY_ID,
            user_id=user_id,
            type=LedgerEntryType.GRANT,
            amount=credits,
            reason="account.open",
            meta={"planCode": plan_code},
        )
        async with self._db.transaction():
            written = await self._db.insert_ledger_entry(entry)
            account = await self._db.create_user_if_absent(
                UserAccount(id=user_id, credit_balance=credits, plan_code=plan_code)
            )
        if written:
            logger.info("Account opened", extra={"user_id": user_id, "plan_code": plan_code, "credits": credits})
            await self._audit.log_transaction(
                user_id=user_id,
                message="Account opened",
                details={"plan_code": plan_code, "credits": credits},
            )
        return account

    async def grant_and_set_plan(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        new_plan_code: str,
        reason: str,
        meta: Optional[Mapping[str, Any]] = None,
        pricing_version: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerWriteResult:
        """
        Reset-style grant: append a GRANT and OVERWRITE the balance to
        `amount` (no carry-forward), setting the plan to `new_plan_code`.
        """
        if amount < 0:
            raise ValueError("amount must not be negative")

        async with self._db.transaction():
            if await self._db.get_ledger_entry(user_id, entry_id) is not None:
                return await self._skipped(user_id, entry_id, "Grant already exists (idempotent)")

            entry = LedgerEntry(
                id=entry_id,
                user_id=user_id,
                type=LedgerEntryType.GRANT,
                amount=amount,
                reason=reason,
                pricing_version=pricing_version,
                meta={**sanitize_meta(meta or {}), "planCode": new_plan_code},
            )
            if not await self._db.insert_ledger_entry(entry):
                return await self._skipped(user_id, entry_id, "Grant written concurrently (idempotent)")

            account = await self._db.set_balance(user_id, amount, plan_code=new_plan_code)

        logger.info(
            "Grant written, balance reset",
            extra={"user_id": user_id, "entry_id": entry_id, "amount": amount, "plan_code": new_plan_code},
        )
        await self._audit.log_transaction(
            user_id=user_id,
            message="Balance reset by grant",
            details={"entry_id": entry_id, "amount": amount, "plan_code": new_plan_code, "reason": reason},
            correlation_id=correlation_id,
        )
        return self._result(entry_id, WriteOutcome.WRITTEN, account)

    async def debit(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        reason: str,
        meta: Optional[Mapping[str, Any]] = None,
        pricing_version: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerWriteResult:
        """
        Charge `amount` at most once per `entry_id`.

        The decrement is conditional on `balance >= amount` at commit time,
        so two debits racing on different ids cannot drive the balance
        negative. Raises `InsufficientBalanceAtDebit` and writes nothing
        when the condition fails.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        async with self._db.transaction():
            if await self._db.get_ledger_entry(user_id, entry_id) is not None:
                return await self._skipped(user_id, entry_id, "Debit already exists (idempotent)")

            account = await self._db.decrement_balance_if_sufficient(user_id, amount)
            if account is None:
                current = await self.read_balance(user_id)
                await self._audit.log_error(
                    message="Insufficient balance at debit",
                    details={"entry_id": entry_id, "requested": amount, "balance": current, "reason": reason},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientBalanceAtDebit(user_id, amount, current)

            entry = LedgerEntry(
                id=entry_id,
                user_id=user_id,
                type=LedgerEntryType.DEBIT,
                amount=amount,
                reason=reason,
                pricing_version=pricing_version,
                meta=sanitize_meta(meta or {}),
            )
            if not await self._db.insert_ledger_entry(entry):
                # Same id committed by a concurrent writer; undo our decrement.
                await self._db.increment_balance(user_id, amount)
                return await self._skipped(user_id, entry_id, "Debit written concurrently (idempotent)")

        logger.info(
            "Debit written",
            extra={"user_id": user_id, "entry_id": entry_id, "amount": amount, "reason": reason},
        )
        await self._audit.log_transaction(
            user_id=user_id,
            message="Credits debited",
            details={"entry_id": entry_id, "amount": amount, "new_balance": account.credit_balance, "reason": reason},
            correlation_id=correlation_id,
        )
        return self._result(entry_id, WriteOutcome.WRITTEN, account)

    async def grant_manual_credits(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        reason: str,
        meta: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerWriteResult:
        """
        Additive top-up (support credit, test grant). Marked `is_manual`, so
        the monthly reroll of the same cycle leaves it in place.
        """
        return await self._credit(
            user_id, entry_id, amount, LedgerEntryType.GRANT, reason, meta,
            is_manual=True, correlation_id=correlation_id,
        )

    async def refund(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        reason: str,
        meta: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerWriteResult:
        """Additive REFUND for a paid operation that failed after being charged."""
        return await self._credit(
            user_id, entry_id, amount, LedgerEntryType.REFUND, reason, meta,
            is_manual=False, correlation_id=correlation_id,
        )

    async def overwrite_cached_balance(self, user_id: str, balance: int) -> UserAccount:
        """Materialize a balance recomputed from the ledger. Reconciliation only."""
        return await self._db.set_balance(user_id, balance)

    # Internals
    async def _credit(
        self,
        user_id: str,
        entry_id: str,
        amount: int,
        entry_type: LedgerEntryType,
        reason: str,
        meta: Optional[Mapping[str, Any]],
        is_manual: bool,
        correlation_id: Optional[str],
    ) -> LedgerWriteResult:
        if amount <= 0:
            raise ValueError("amount must be positive")

        async with self._db.transaction():
            if await self._db.get_ledger_entry(user_id, entry_id) is not None:
                return await self._skipped(user_id, entry_id, "Credit already exists (idempotent)")

            entry = LedgerEntry(
                id=entry_id,
                user_id=user_id,
                type=entry_type,
                amount=amount,
                reason=reason,
                meta=sanitize_meta(meta or {}),
                is_manual=is_manual,
            )
            if not await self._db.insert_ledger_entry(entry):
                return await self._skipped(user_id, entry_id, "Credit written concurrently (idempotent)")
            account = await self._db.increment_balance(user_id, amount)

        logger.info(
            "Credits added",
            extra={"user_id": user_id, "entry_id": entry_id, "amount": amount, "type": entry_type.value},
        )
        await self._audit.log_transaction(
            user_id=user_id,
            message="Credits added",
            details={"entry_id": entry_id, "amount": amount, "type": entry_type.value, "reason": reason},
            correlation_id=correlation_id,
        )
        return self._result(entry_id, WriteOutcome.WRITTEN, account)

    async def _skipped(self, user_id: str, entry_id: str, message: str) -> LedgerWriteResult:
        logger.info(message, extra={"user_id": user_id, "entry_id": entry_id})
        account = await self._db.get_user(user_id)
        return self._result(entry_id, WriteOutcome.SKIPPED, account)

    @classmethod
    def _result(
        cls, entry_id: str, outcome: WriteOutcome, account: Optional[UserAccount]
    ) -> LedgerWriteResult:
        state = cls._state(account)
        return LedgerWriteResult(
            entry_id=entry_id,
            outcome=outcome,
            credit_balance=state.credit_balance,
            plan_code=state.plan_code,
        )

    @staticmethod
    def _state(account: Optional[UserAccount]) -> UserCreditState:
        if account is None:
            return UserCreditState(credit_balance=0, plan_code=FREE_PLAN_CODE)
        return UserCreditState(
            credit_balance=account.credit_balance or 0,
            plan_code=account.plan_code or FREE_PLAN_CODE,
        )
