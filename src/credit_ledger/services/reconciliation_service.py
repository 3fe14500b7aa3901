from __future__ import annotations

import logging
from typing import Iterable

from ..logging.audit_logger import AuditLogger
from ..models.billing import ReconcileResult
from ..models.ledger import LedgerEntry, LedgerEntryType
from .ledger_store import LedgerStore


logger = logging.getLogger(__name__)


def replay_ledger(entries: Iterable[LedgerEntry]) -> ReconcileResult:
    """
    Compute the balance implied by a ledger, oldest entry first.

    Only CONFIRMED entries count. Plan grants are reset-style, so a
    non-manual GRANT sets the running balance to its amount; manual grants
    and refunds add; debits subtract.
    """
    balance = 0
    total_grants = total_debits = total_refunds = debits_since_reset = 0

    for entry in entries:
        if not entry.is_confirmed:
            continue
        if entry.type == LedgerEntryType.GRANT and not entry.is_manual:
            balance = entry.amount
            total_grants += entry.amount
            debits_since_reset = 0
            continue

        balance += entry.signed_amount
        if entry.type == LedgerEntryType.DEBIT:
            total_debits += entry.amount
            debits_since_reset += entry.amount
        elif entry.type == LedgerEntryType.REFUND:
            total_refunds += entry.amount
        else:
            total_grants += entry.amount

    return ReconcileResult(
        calculated_balance=balance,
        total_debits=total_debits,
        total_grants=total_grants,
        total_refunds=total_refunds,
        debits_since_reset=debits_since_reset,
    )


class ReconciliationService:
    """
    Recomputes the cached balance from the ledger, which is authoritative.
    Safe to run at any time; running it twice with no ledger writes in
    between yields the same result and the second run corrects nothing.
    """

    def __init__(self, ledger: LedgerStore, audit: AuditLogger) -> None:
        self._ledger = ledger
        self._audit = audit

    async def reconcile(self, user_id: str) -> ReconcileResult:
        entries = await self._ledger.list_entries(user_id)
        result = replay_ledger(entries)

        account = await self._ledger.read_account(user_id)
        if account is None:
            # Nothing cached to correct
            return result

        result.previous_balance = account.credit_balance
        if account.credit_balance == result.calculated_balance:
            return result

        logger.warning(
            "ReconciliationMismatch: cached balance corrected from ledger",
            extra={
                "user_id": user_id,
                "cached_balance": account.credit_balance,
                "calculated_balance": result.calculated_balance,
            },
        )
        await self._audit.log_error(
            message="Reconciliation mismatch corrected",
            details={
                "cached_balance": account.credit_balance,
                "calculated_balance": result.calculated_balance,
                "total_grants": result.total_grants,
                "total_debits": result.total_debits,
                "total_refunds": result.total_refunds,
            },
            user_id=user_id,
        )
        await self._ledger.overwrite_cached_balance(user_id, result.calculated_balance)
        result.corrected = True
        return result
