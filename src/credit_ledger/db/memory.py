from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from .base import BaseDBManager
from ..models.audit import AuditEvent
from ..models.base import utcnow
from ..models.ledger import LedgerEntry
from ..models.plan import Plan
from ..models.user import UserAccount


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    No primitive awaits between its read and its write, so each one is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._plans: Dict[str, Plan] = {}
        self._users: Dict[str, UserAccount] = {}
        self._ledgers: Dict[str, Dict[str, LedgerEntry]] = {}
        self._audit: List[AuditEvent] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # Plans
    async def upsert_plan(self, plan: Plan) -> Plan:
        existing = self._plans.get(plan.code)
        if existing is not None:
            plan = plan.model_copy(update={"created_at": existing.created_at})
        self._plans[plan.code] = plan
        return plan

    async def get_plan(self, code: str) -> Optional[Plan]:
        return self._plans.get(code)

    async def get_all_plans(self) -> Iterable[Plan]:
        return sorted(self._plans.values(), key=lambda p: p.sort_order)

    # Accounts
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.model_copy() if user is not None else None

    async def create_user_if_absent(self, user: UserAccount) -> UserAccount:
        stored = self._users.setdefault(user.id, user.model_copy())
        return stored.model_copy()

    async def set_balance(
        self, user_id: str, balance: int, plan_code: Optional[str] = None
    ) -> UserAccount:
        user = self._users.get(user_id)
        if user is None:
            user = UserAccount(id=user_id)
            self._users[user_id] = user
        user.credit_balance = balance
        if plan_code is not None:
            user.plan_code = plan_code
        user.updated_at = utcnow()
        return user.model_copy()

    async def increment_balance(self, user_id: str, amount: int) -> UserAccount:
        user = self._users.get(user_id)
        if user is None:
            user = UserAccount(id=user_id, credit_balance=0)
            self._users[user_id] = user
        user.credit_balance = (user.credit_balance or 0) + amount
        user.updated_at = utcnow()
        return user.model_copy()

    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: int
    ) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        if user is None or user.credit_balance is None or user.credit_balance < amount:
            return None
        user.credit_balance -= amount
        user.updated_at = utcnow()
        return user.model_copy()

    # Ledger
    async def get_ledger_entry(self, user_id: str, entry_id: str) -> Optional[LedgerEntry]:
        return self._ledgers.get(user_id, {}).get(entry_id)

    async def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        entries = self._ledgers.setdefault(entry.user_id, {})
        if entry.id in entries:
            return False
        entries[entry.id] = entry
        return True

    async def list_ledger_entries(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[LedgerEntry]:
        # Insertion order breaks ties between equal timestamps
        indexed: List[Tuple[int, LedgerEntry]] = list(
            enumerate(self._ledgers.get(user_id, {}).values())
        )
        if since is not None:
            indexed = [(i, e) for i, e in indexed if e.created_at >= since]
        indexed.sort(key=lambda ie: (ie[1].created_at, ie[0]), reverse=newest_first)
        entries = [e for _, e in indexed]
        if limit is not None:
            entries = entries[:limit]
        return entries

    # Audit
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        if event.id is None:
            event.id = self._next_id()
        self._audit.append(event)
        return event

    @property
    def audit_events(self) -> List[AuditEvent]:
        return list(self._audit)
