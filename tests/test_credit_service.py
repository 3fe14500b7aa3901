from __future__ import annotations

import asyncio

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import InsufficientBalanceAtDebit, PaymentRequired, UnknownPlan
from credit_ledger.logging.audit_logger import AuditLogger
from credit_ledger.models.ledger import LedgerEntry, LedgerEntryType, WriteOutcome
from credit_ledger.models.user import UserAccount
from credit_ledger.pricing.base import PricedRequest, PricingResult
from credit_ledger.services.credit_service import CreditService


def _fixed_cost(cost: int):
    def compute(params):
        return PricingResult(cost=cost, pricing_version="test-v1", meta={"model": "fixed"})

    return compute


def _make_service(tmp_path, **kwargs):
    db = InMemoryDBManager()
    audit = AuditLogger(db=db, file_path=tmp_path / "audit.log")
    service = CreditService(db=db, audit=audit, cache=InMemoryAsyncCache(), **kwargs)
    return db, service


REQUEST = PricedRequest(provider="test", operation="generate")


@pytest.mark.asyncio
async def test_new_user_starts_on_free_plan(tmp_path):
    db, service = _make_service(tmp_path)

    state = await service.ensure_user_init("u1")
    assert state.credit_balance == 4120
    assert state.plan_code == "FREE"

    entries = await db.list_ledger_entries("u1")
    assert [e.id for e in entries] == ["ACCOUNT_OPEN"]
    assert entries[0].type == LedgerEntryType.GRANT
    assert entries[0].amount == 4120


@pytest.mark.asyncio
async def test_ensure_user_init_is_idempotent(tmp_path):
    db, service = _make_service(tmp_path)

    first = await service.ensure_user_init("u1")
    second = await service.ensure_user_init("u1")
    assert first == second
    assert len(await db.list_ledger_entries("u1")) == 1


@pytest.mark.asyncio
async def test_concurrent_init_converges(tmp_path):
    db, service = _make_service(tmp_path)

    states = await asyncio.gather(*(service.ensure_user_init("u1") for _ in range(5)))
    assert {s.credit_balance for s in states} == {4120}
    assert len(await db.list_ledger_entries("u1")) == 1


@pytest.mark.asyncio
async def test_blank_user_id_is_rejected(tmp_path):
    _, service = _make_service(tmp_path)
    with pytest.raises(ValueError):
        await service.ensure_user_init("  ")


@pytest.mark.asyncio
async def test_switch_plan_then_charge(tmp_path):
    _, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")

    state = await service.switch_plan("u1", "PLAN_B")
    assert state.credit_balance == 50000
    assert state.plan_code == "PLAN_B"

    auth = await service.pre_authorize("u1", REQUEST, compute_cost=_fixed_cost(10))
    assert auth.cost == 10
    assert auth.idempotency_key

    outcome = await service.confirm_authorization("u1", auth, history_id="h-1")
    assert outcome == WriteOutcome.WRITTEN
    assert (await service.get_state("u1")).credit_balance == 49990


@pytest.mark.asyncio
async def test_payment_required_leaves_balance_unchanged(tmp_path):
    _, service = _make_service(tmp_path)
    await service.switch_plan("u1", "PLAN_B")
    auth = await service.pre_authorize("u1", REQUEST, compute_cost=_fixed_cost(10))
    await service.confirm_authorization("u1", auth)

    with pytest.raises(PaymentRequired) as excinfo:
        await service.pre_authorize("u1", REQUEST, compute_cost=_fixed_cost(100000))

    assert excinfo.value.to_dict() == {"requiredCredits": 100000, "currentBalance": 49990}
    assert (await service.get_state("u1")).credit_balance == 49990


@pytest.mark.asyncio
async def test_reconcile_repairs_balance_after_lost_update(tmp_path):
    db, service = _make_service(tmp_path)
    await service.switch_plan("u1", "PLAN_B")
    auth = await service.pre_authorize("u1", REQUEST, compute_cost=_fixed_cost(10))
    await service.confirm_authorization("u1", auth)

    # Ledger written, cached balance not updated
    await db.insert_ledger_entry(
        LedgerEntry(id="crashed-debit", user_id="u1", type=LedgerEntryType.DEBIT, amount=10, reason="test")
    )
    assert (await service.get_state("u1")).credit_balance == 49990

    result = await service.reconcile("u1")
    assert result.previous_balance == 49990
    assert result.calculated_balance == 49980
    assert result.corrected is True
    assert (await service.get_state("u1")).credit_balance == 49980

    again = await service.reconcile("u1")
    assert again.corrected is False
    assert again.calculated_balance == 49980
    assert any(e.message == "Reconciliation mismatch corrected" for e in db.audit_events)


@pytest.mark.asyncio
async def test_confirm_debit_twice_charges_once(tmp_path):
    db, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")

    first = await service.confirm_debit("u1", "key-1", 10, "test.generate")
    second = await service.confirm_debit("u1", "key-1", 10, "test.generate")

    assert first == WriteOutcome.WRITTEN
    assert second == WriteOutcome.SKIPPED
    assert (await service.get_state("u1")).credit_balance == 4110
    debits = [e for e in await db.list_ledger_entries("u1") if e.type == LedgerEntryType.DEBIT]
    assert len(debits) == 1


@pytest.mark.asyncio
async def test_zero_cost_writes_nothing(tmp_path):
    db, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")

    assert await service.confirm_debit("u1", "key-1", 0, "free.op") == WriteOutcome.NO_COST
    assert len(await db.list_ledger_entries("u1")) == 1


@pytest.mark.asyncio
async def test_racing_authorizations_never_overspend(tmp_path):
    _, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")

    # Both pass the advisory check against 4120
    a1 = await service.pre_authorize("u1", REQUEST, compute_cost=_fixed_cost(3000))
    a2 = await service.pre_authorize("u1", REQUEST, compute_cost=_fixed_cost(3000))
    assert a1.idempotency_key != a2.idempotency_key

    assert await service.confirm_authorization("u1", a1) == WriteOutcome.WRITTEN
    with pytest.raises(InsufficientBalanceAtDebit) as excinfo:
        await service.confirm_authorization("u1", a2)

    assert excinfo.value.required_credits == 3000
    assert excinfo.value.current_balance == 1120
    assert (await service.get_state("u1")).credit_balance == 1120


@pytest.mark.asyncio
async def test_concurrent_confirms_never_go_negative(tmp_path):
    _, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")

    results = await asyncio.gather(
        *(service.confirm_debit("u1", f"key-{i}", 1000, "test.generate") for i in range(6)),
        return_exceptions=True,
    )
    written = [r for r in results if r == WriteOutcome.WRITTEN]
    failed = [r for r in results if isinstance(r, InsufficientBalanceAtDebit)]
    assert len(written) == 4
    assert len(failed) == 2
    assert (await service.get_state("u1")).credit_balance == 120


@pytest.mark.asyncio
async def test_switch_to_same_plan_twice_is_noop(tmp_path):
    db, service = _make_service(tmp_path)
    await service.switch_plan("u1", "PLAN_B")
    await service.confirm_debit("u1", "key-1", 10, "test.generate")

    state = await service.switch_plan("u1", "PLAN_B")
    assert state.credit_balance == 49990
    switches = [e for e in await db.list_ledger_entries("u1") if e.reason == "plan.switch"]
    assert len(switches) == 1


@pytest.mark.asyncio
async def test_switch_back_to_previous_plan_resets_again(tmp_path):
    db, service = _make_service(tmp_path)

    await service.switch_plan("u1", "PLAN_A")
    await service.switch_plan("u1", "PLAN_B")
    state = await service.switch_plan("u1", "PLAN_A")

    assert state.plan_code == "PLAN_A"
    assert state.credit_balance == 12360
    switch_ids = [e.id for e in await db.list_ledger_entries("u1") if e.reason == "plan.switch"]
    assert switch_ids == ["PLAN_SWITCH_PLAN_A", "PLAN_SWITCH_PLAN_B", "PLAN_SWITCH_PLAN_A#2"]


@pytest.mark.asyncio
async def test_switch_is_a_reset_not_a_top_up(tmp_path):
    _, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")
    await service.grant_manual_credits("u1", "support-1", 1000)

    state = await service.switch_plan("u1", "PLAN_A")
    assert state.credit_balance == 12360


@pytest.mark.asyncio
async def test_switch_to_unknown_plan_fails_without_writes(tmp_path):
    db, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")

    with pytest.raises(UnknownPlan):
        await service.switch_plan("u1", "PLAN_Z")
    assert len(await db.list_ledger_entries("u1")) == 1


@pytest.mark.asyncio
async def test_corrupt_balance_is_repaired_to_plan_allotment(tmp_path):
    db, service = _make_service(tmp_path)
    await db.create_user_if_absent(UserAccount(id="u1", credit_balance="oops", plan_code="PLAN_B"))

    state = await service.ensure_user_init("u1")
    assert state.credit_balance == 50000
    assert state.plan_code == "PLAN_B"

    entries = await db.list_ledger_entries("u1")
    assert len(entries) == 1
    assert entries[0].id.startswith("ACCOUNT_REPAIR_")
    assert entries[0].reason == "account.repair"


@pytest.mark.asyncio
async def test_manual_grant_and_refund_are_additive(tmp_path):
    db, service = _make_service(tmp_path)

    granted = await service.grant_manual_credits("u1", "support-1", 500)
    assert granted.outcome == WriteOutcome.WRITTEN
    assert granted.credit_balance == 4620

    again = await service.grant_manual_credits("u1", "support-1", 500)
    assert again.outcome == WriteOutcome.SKIPPED

    await service.confirm_debit("u1", "key-1", 120, "bfl.generate")
    assert await service.refund("u1", "refund-key-1", 120, "bfl.generate.failed") == WriteOutcome.WRITTEN
    assert (await service.get_state("u1")).credit_balance == 4620

    result = await service.reconcile("u1")
    assert result.corrected is False
    assert result.total_refunds == 120


@pytest.mark.asyncio
async def test_reconcile_on_confirm(tmp_path):
    db, service = _make_service(tmp_path, reconcile_on_confirm=True)
    await service.ensure_user_init("u1")
    await db.set_balance("u1", 9999)

    await service.confirm_debit("u1", "key-1", 10, "test.generate")
    assert (await service.get_state("u1")).credit_balance == 4110


@pytest.mark.asyncio
async def test_audit_file_records_transactions(tmp_path):
    _, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")
    await service.confirm_debit("u1", "key-1", 10, "test.generate")

    lines = (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert '"Credits debited"' in lines[-1]


class _LosesDebitInsertRace(InMemoryDBManager):
    """Reports the next DEBIT insert as already committed by another writer."""

    def __init__(self):
        super().__init__()
        self.lose_next_debit = True

    async def insert_ledger_entry(self, entry):
        if entry.type == LedgerEntryType.DEBIT and self.lose_next_debit:
            self.lose_next_debit = False
            return False
        return await super().insert_ledger_entry(entry)


@pytest.mark.asyncio
async def test_debit_that_loses_insert_race_restores_balance(tmp_path):
    db = _LosesDebitInsertRace()
    service = CreditService(db=db, audit=AuditLogger(db=db, file_path=tmp_path / "audit.log"))
    await service.ensure_user_init("u1")

    outcome = await service.confirm_debit("u1", "job-1", 120, "test.generate")
    assert outcome == WriteOutcome.SKIPPED
    assert (await service.get_state("u1")).credit_balance == 4120
    assert [e.type for e in await db.list_ledger_entries("u1")] == [LedgerEntryType.GRANT]

    assert await service.confirm_debit("u1", "job-1", 120, "test.generate") == WriteOutcome.WRITTEN
    assert (await service.get_state("u1")).credit_balance == 4000


class _StaleReadsDB(InMemoryDBManager):
    """Serves a frozen account snapshot while `stale` is set."""

    def __init__(self):
        super().__init__()
        self.stale = None

    async def get_user(self, user_id):
        if self.stale is not None:
            return self.stale.model_copy()
        return await super().get_user(user_id)


@pytest.mark.asyncio
async def test_repairs_of_same_corrupt_account_grant_once(tmp_path):
    db = _StaleReadsDB()
    service = CreditService(db=db, audit=AuditLogger(db=db, file_path=tmp_path / "audit.log"))
    await db.create_user_if_absent(UserAccount(id="u1", credit_balance="oops", plan_code="PLAN_B"))

    # Both callers observe the corrupt balance before either repair lands
    db.stale = await db.get_user("u1")
    await service.ensure_user_init("u1")
    await service.ensure_user_init("u1")
    db.stale = None

    entries = await db.list_ledger_entries("u1")
    assert len(entries) == 1
    assert entries[0].id.startswith("ACCOUNT_REPAIR_")
    assert (await service.get_state("u1")).credit_balance == 50000
