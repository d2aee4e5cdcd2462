import asyncio
import time

import pytest

from searchchat.errors import ProcessingError, QuotaError
from searchchat.ledger import CreditLedgerGuard
from searchchat.tiers import CreditStore
from tests.conftest import FREE_MODEL, make_settings, seed_user
from tests.fakes import DelayedCreditStore


async def test_committed_debit_is_recorded(db):
    guard = CreditLedgerGuard(DelayedCreditStore(result=True), db, timeout_s=1.0)
    tx = await guard.debit("req-1", FREE_MODEL, False, "user-1", False)
    assert tx.outcome == "committed"
    row = await db.get_credit_transaction("req-1")
    assert row["outcome"] == "committed"
    assert row["late_outcome"] is None


async def test_denied_debit_raises_insufficient_credits(db):
    guard = CreditLedgerGuard(DelayedCreditStore(result=False), db, timeout_s=1.0)
    with pytest.raises(QuotaError) as exc_info:
        await guard.debit("req-2", FREE_MODEL, False, "user-1", False)
    assert exc_info.value.code == "INSUFFICIENT_CREDITS"
    assert exc_info.value.status_code == 403
    assert (await db.get_credit_transaction("req-2"))["outcome"] == "denied"


async def test_own_key_never_denied(db):
    guard = CreditLedgerGuard(DelayedCreditStore(result=False), db, timeout_s=1.0)
    tx = await guard.debit("req-3", FREE_MODEL, True, "user-1", False)
    assert tx.outcome == "committed"


async def test_store_failure_is_generic_processing_error(db):
    guard = CreditLedgerGuard(DelayedCreditStore(error=RuntimeError("db down")), db, timeout_s=1.0)
    with pytest.raises(ProcessingError) as exc_info:
        await guard.debit("req-4", FREE_MODEL, False, "user-1", False)
    assert exc_info.value.message == "Failed to process request. Please try again."
    assert exc_info.value.status_code == 500


async def test_timeout_continues_and_late_outcome_is_recorded(db):
    store = DelayedCreditStore(delay_seconds=0.3, result=True)
    guard = CreditLedgerGuard(store, db, timeout_s=0.05)
    started = time.monotonic()
    tx = await guard.debit("req-5", FREE_MODEL, False, "user-1", False)
    assert time.monotonic() - started < 0.25
    assert tx.outcome == "timed_out"
    # The abandoned debit is still running, not cancelled.
    assert store.completed == 0

    await guard.drain()
    assert store.completed == 1
    row = await db.get_credit_transaction("req-5")
    assert row["outcome"] == "timed_out"
    assert row["late_outcome"] == "committed"


async def test_late_denial_is_recorded_but_not_raised(db):
    guard = CreditLedgerGuard(DelayedCreditStore(delay_seconds=0.2, result=False), db, timeout_s=0.05)
    tx = await guard.debit("req-6", FREE_MODEL, False, "user-1", False)
    assert tx.outcome == "timed_out"
    await guard.drain()
    assert (await db.get_credit_transaction("req-6"))["late_outcome"] == "denied"


async def test_real_store_debits_exactly_once(tmp_path, db):
    settings = make_settings(tmp_path)
    await seed_user(db, "user-1", free=1)
    guard = CreditLedgerGuard(CreditStore(settings, db), db, timeout_s=1.0)

    await guard.debit("req-7", FREE_MODEL, False, "user-1", False)
    assert (await db.get_user_tier("user-1"))["free_credits"] == 0

    with pytest.raises(QuotaError):
        await guard.debit("req-8", FREE_MODEL, False, "user-1", False)
    assert (await db.get_user_tier("user-1"))["free_credits"] == 0


async def test_cancelled_debit_still_records_its_outcome(db):
    store = DelayedCreditStore(delay_seconds=0.2, result=True)
    guard = CreditLedgerGuard(store, db, timeout_s=5.0)
    task = asyncio.create_task(guard.debit("req-cancel", FREE_MODEL, False, "user-1", False))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert await db.get_credit_transaction("req-cancel") is None

    await guard.drain()
    assert store.completed == 1
    row = await db.get_credit_transaction("req-cancel")
    assert row["outcome"] == "committed"
