from __future__ import annotations

from datetime import datetime, timezone

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.audit_logger import AuditLogger
from credit_ledger.models.ledger import LedgerEntry, LedgerEntryStatus, LedgerEntryType
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.reconciliation_service import replay_ledger
from credit_ledger.services.reroll_service import (
    MANUAL_GRANT_SKIP,
    cycle_key,
    cycle_start,
    monthly_reset_entry_id,
)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_service(tmp_path, clock=None):
    db = InMemoryDBManager()
    audit = AuditLogger(db=db, file_path=tmp_path / "audit.log")
    kwargs = {"clock": clock} if clock is not None else {}
    return db, CreditService(db=db, audit=audit, **kwargs)


def _entry(entry_id, entry_type, amount, **kwargs):
    return LedgerEntry(id=entry_id, user_id="u1", type=entry_type, amount=amount, reason="test", **kwargs)


def test_cycle_helpers_use_utc():
    now = datetime(2025, 3, 31, 23, 30, tzinfo=timezone.utc)
    assert cycle_key(now) == "2025-03"
    assert cycle_start(now) == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert monthly_reset_entry_id("2025-03") == "PLAN_MONTHLY_RESET_2025-03"


@pytest.mark.asyncio
async def test_monthly_reroll_runs_once_per_cycle(tmp_path):
    db, service = _make_service(tmp_path, clock=_Clock(datetime(2025, 3, 10, tzinfo=timezone.utc)))
    await service.switch_plan("u1", "PLAN_A")
    await service.confirm_debit("u1", "key-1", 100, "test.generate")

    first = await service.ensure_monthly_reroll("u1")
    assert first.cycle == "2025-03"
    assert first.credit_balance == 12360
    assert first.skipped_reason is None

    await service.confirm_debit("u1", "key-2", 60, "test.generate")
    second = await service.ensure_monthly_reroll("u1")
    assert second.credit_balance == 12300

    resets = [e for e in await db.list_ledger_entries("u1") if e.id.startswith("PLAN_MONTHLY_RESET_")]
    assert [e.id for e in resets] == ["PLAN_MONTHLY_RESET_2025-03"]


@pytest.mark.asyncio
async def test_monthly_reroll_resets_again_next_month(tmp_path):
    clock = _Clock(datetime(2025, 3, 10, tzinfo=timezone.utc))
    db, service = _make_service(tmp_path, clock=clock)
    await service.ensure_user_init("u1")
    await service.ensure_monthly_reroll("u1")
    await service.confirm_debit("u1", "key-1", 1000, "test.generate")

    clock.now = datetime(2025, 4, 1, 0, 0, 1, tzinfo=timezone.utc)
    result = await service.ensure_monthly_reroll("u1")

    assert result.cycle == "2025-04"
    assert result.plan_code == "FREE"
    assert result.credit_balance == 4120
    assert await db.get_ledger_entry("u1", "PLAN_MONTHLY_RESET_2025-04") is not None


@pytest.mark.asyncio
async def test_manual_grant_this_cycle_suppresses_reroll(tmp_path):
    db, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")
    await service.grant_manual_credits("u1", "support-topup-1", 800)

    result = await service.ensure_monthly_reroll("u1")

    assert result.skipped_reason == MANUAL_GRANT_SKIP
    assert result.credit_balance == 4920
    assert (await service.get_state("u1")).credit_balance == 4920
    ids = [e.id for e in await db.list_ledger_entries("u1")]
    assert not any(i.startswith("PLAN_MONTHLY_RESET_") for i in ids)


@pytest.mark.asyncio
async def test_reroll_with_unknown_plan_falls_back_to_free(tmp_path):
    db, service = _make_service(tmp_path)
    await service.ensure_user_init("u1")
    await db.set_balance("u1", 10, plan_code="RETIRED")

    result = await service.ensure_monthly_reroll("u1")
    assert result.plan_code == "FREE"
    assert result.credit_balance == 4120


def test_replay_ignores_pending_and_reversed_entries():
    entries = [
        _entry("open", LedgerEntryType.GRANT, 4120),
        _entry("d1", LedgerEntryType.DEBIT, 100),
        _entry("d2", LedgerEntryType.DEBIT, 50, status=LedgerEntryStatus.PENDING),
        _entry("d3", LedgerEntryType.DEBIT, 70, status=LedgerEntryStatus.REVERSED),
    ]
    result = replay_ledger(entries)
    assert result.calculated_balance == 4020
    assert result.total_debits == 100


def test_replay_plan_grant_resets_running_balance():
    entries = [
        _entry("open", LedgerEntryType.GRANT, 4120),
        _entry("d1", LedgerEntryType.DEBIT, 100),
        _entry("switch", LedgerEntryType.GRANT, 50000),
        _entry("d2", LedgerEntryType.DEBIT, 10),
        _entry("manual", LedgerEntryType.GRANT, 500, is_manual=True),
        _entry("refund", LedgerEntryType.REFUND, 10),
    ]
    result = replay_ledger(entries)
    assert result.calculated_balance == 50500
    assert result.total_grants == 54620
    assert result.total_debits == 110
    assert result.debits_since_reset == 10
    assert result.total_refunds == 10


def test_replay_of_single_grant_equals_grants_minus_debits():
    entries = [
        _entry("open", LedgerEntryType.GRANT, 4120),
        _entry("d1", LedgerEntryType.DEBIT, 100),
        _entry("d2", LedgerEntryType.DEBIT, 20),
    ]
    result = replay_ledger(entries)
    assert result.calculated_balance == result.total_grants - result.total_debits == 4000


@pytest.mark.asyncio
async def test_reconcile_unknown_user_writes_nothing(tmp_path):
    db, service = _make_service(tmp_path)

    result = await service.reconcile("ghost")
    assert result.calculated_balance == 0
    assert result.corrected is False
    assert await db.get_user("ghost") is None
