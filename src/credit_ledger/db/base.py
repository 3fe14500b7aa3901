from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from ..models.audit import AuditEvent
from ..models.ledger import LedgerEntry
from ..models.plan import Plan
from ..models.user import UserAccount


class BaseDBManager(ABC):
    """
    DB-agnostic async storage interface for plans, accounts and ledgers.

    Each balance primitive is a single-document atomic write. Callers must
    not assume that a sequence of calls is linearizable; the ledger store
    composes these primitives so that every interleaving converges or is
    correctable by reconciliation.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        """
        yield

    # Plans
    @abstractmethod
    async def upsert_plan(self, plan: Plan) -> Plan:
        """Insert or merge a plan row, keeping the original `created_at`."""

    @abstractmethod
    async def get_plan(self, code: str) -> Optional[Plan]: ...

    @abstractmethod
    async def get_all_plans(self) -> Iterable[Plan]: ...

    # Accounts
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def create_user_if_absent(self, user: UserAccount) -> UserAccount:
        """
        Create the account unless one exists; return the stored account
        either way. Concurrent calls converge on a single document.
        """

    @abstractmethod
    async def set_balance(
        self, user_id: str, balance: int, plan_code: Optional[str] = None
    ) -> UserAccount:
        """Overwrite balance (and plan when given), creating the account if needed."""

    @abstractmethod
    async def increment_balance(self, user_id: str, amount: int) -> UserAccount: ...

    @abstractmethod
    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: int
    ) -> Optional[UserAccount]:
        """
        Atomically decrement only when the balance at commit time is at
        least `amount`. Returns the updated account, or None when the
        condition fails or the account does not exist.
        """

    # Ledger
    @abstractmethod
    async def get_ledger_entry(self, user_id: str, entry_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    async def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        """
        Append an entry. Returns False, writing nothing, when an entry with
        the same id already exists for the user.
        """

    @abstractmethod
    async def list_ledger_entries(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[LedgerEntry]: ...

    # Audit
    @abstractmethod
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...
