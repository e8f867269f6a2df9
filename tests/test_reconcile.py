"""
Pytest tests for explicit resolution of pending records: reconcile_pending
against the ledger and manual operator resolve().
"""

from __future__ import annotations

import pytest
from fakes import DAY, T0, FakeLedger, ledger_entry

from ckb_transfer_guard.core.exceptions import (
    InvalidStatusTransition,
    RecordNotFound,
    TransferGuardError,
)
from ckb_transfer_guard.database import TransferRequest, TransferStatus
from ckb_transfer_guard.guard import Duplicate, Proceed

LATER = T0 + 700


def _pending(log, request, ts=T0, identifier=None):
    record, _ = log.claim(request, ts, request.window_sec or DAY)
    if identifier:
        log.attach_identifier(record.id, identifier, now_ts=ts)
    return record


def test_pending_with_identifier_confirmed_by_ledger(make_guard, sqlite_log, request_100):
    record = _pending(sqlite_log, request_100, identifier="0xaaa")
    ledger = FakeLedger([ledger_entry("0xaaa", T0 + 30)])
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER)
    assert report.checked == 1
    assert report.confirmed == 1
    assert report.record_ids["confirmed"] == [record.id]
    stored = sqlite_log.get_record(record.id)
    assert stored.status is TransferStatus.CONFIRMED
    assert stored.identifier == "0xaaa"


def test_pending_with_identifier_failed_on_chain(make_guard, sqlite_log, request_100):
    """Ledger reports the broadcast transaction failed: record failed, retry allowed."""
    record = _pending(sqlite_log, request_100, identifier="0xaaa")
    ledger = FakeLedger([ledger_entry("0xaaa", T0 + 30, status="failed")])
    guard = make_guard(ledger=ledger)
    report = guard.reconcile_pending(now_ts=LATER)
    assert report.failed == 1
    assert sqlite_log.get_record(record.id).status is TransferStatus.FAILED
    assert isinstance(guard.evaluate(request_100, now_ts=LATER), Proceed)


def test_pending_with_identifier_still_in_pool(make_guard, sqlite_log, request_100):
    record = _pending(sqlite_log, request_100, identifier="0xaaa")
    ledger = FakeLedger([ledger_entry("0xaaa", T0 + 30, status="pending")])
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER)
    assert report.unresolved == 1
    assert sqlite_log.get_record(record.id).status is TransferStatus.PENDING


def test_ambiguous_pending_matched_to_chain_transfer(make_guard, sqlite_log, request_100):
    """A pending record with no identifier takes the matching confirmed chain transfer."""
    record = _pending(sqlite_log, request_100)
    ledger = FakeLedger([
        ledger_entry("0xbefore", T0 - 100),
        ledger_entry("0xafter", T0 + 5),
    ])
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER)
    assert report.confirmed == 1
    assert sqlite_log.get_record(record.id).identifier == "0xafter"


def test_each_chain_transfer_claimed_once(make_guard, sqlite_log):
    """Two stuck attempts for one tuple get distinct chain transfers, oldest first."""
    short = TransferRequest(recipient="addr1", amount=7, window_sec=1)
    first = _pending(sqlite_log, short, ts=T0)
    second = _pending(sqlite_log, short, ts=T0 + 10)
    ledger = FakeLedger([ledger_entry("0x01", T0 + 1), ledger_entry("0x02", T0 + 11)])
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER)
    assert report.confirmed == 2
    assert sqlite_log.get_record(first.id).identifier == "0x01"
    assert sqlite_log.get_record(second.id).identifier == "0x02"


def test_identifier_known_locally_not_reused(make_guard, sqlite_log):
    """A chain transfer already tied to another local record is not assigned again."""
    short = TransferRequest(recipient="addr1", amount=7, window_sec=1)
    done, _ = sqlite_log.claim(short, T0, 1)
    sqlite_log.mark_confirmed(done.id, "0x01", now_ts=T0)
    stuck = _pending(sqlite_log, short, ts=T0 + 10)
    ledger = FakeLedger([ledger_entry("0x01", T0 + 10)])
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER)
    assert report.unresolved == 1
    assert sqlite_log.get_record(stuck.id).status is TransferStatus.PENDING


def test_nothing_on_chain_stays_pending(make_guard, sqlite_log, request_100):
    """No evidence either way: the record keeps blocking retries."""
    record = _pending(sqlite_log, request_100)
    guard = make_guard(ledger=FakeLedger())
    report = guard.reconcile_pending(now_ts=LATER)
    assert report.unresolved == 1
    assert isinstance(guard.evaluate(request_100, now_ts=LATER), Duplicate)
    assert sqlite_log.get_record(record.id).status is TransferStatus.PENDING


def test_ledger_failure_is_inconclusive(make_guard, sqlite_log, request_100):
    record = _pending(sqlite_log, request_100)
    ledger = FakeLedger(error=ConnectionError("indexer down"))
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER)
    assert report.inconclusive == 1
    assert report.record_ids["inconclusive"] == [record.id]
    assert sqlite_log.get_record(record.id).status is TransferStatus.PENDING


def test_young_records_skipped(make_guard, sqlite_log, request_100):
    """Records younger than reconcile_after_sec are in flight, not stuck."""
    _pending(sqlite_log, request_100, ts=T0)
    ledger = FakeLedger([ledger_entry("0xaaa", T0 + 1)])
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=T0 + 60)
    assert report.checked == 0
    assert ledger.calls == []
    report = make_guard(ledger=ledger).reconcile_pending(older_than_sec=30, now_ts=T0 + 60)
    assert report.checked == 1


def test_reconcile_requires_ledger(make_guard):
    with pytest.raises(TransferGuardError):
        make_guard().reconcile_pending()


# --- operator resolve ---


def test_resolve_confirmed(make_guard, sqlite_log, request_100):
    record = _pending(sqlite_log, request_100)
    resolved = make_guard().resolve(record.id, "confirmed", identifier="0xmanual")
    assert resolved.status is TransferStatus.CONFIRMED
    assert resolved.identifier == "0xmanual"


def test_resolve_failed_unblocks(make_guard, sqlite_log, request_100):
    record = _pending(sqlite_log, request_100)
    guard = make_guard()
    resolved = guard.resolve(record.id, TransferStatus.FAILED)
    assert resolved.error == "resolved by operator"
    assert isinstance(guard.evaluate(request_100), Proceed)


def test_resolve_rejects_illegal_transitions(make_guard, sqlite_log, request_100):
    record = _pending(sqlite_log, request_100)
    guard = make_guard()
    with pytest.raises(InvalidStatusTransition):
        guard.resolve(record.id, "pending")
    guard.resolve(record.id, "confirmed", identifier="0x1")
    with pytest.raises(InvalidStatusTransition):
        guard.resolve(record.id, "failed")
    with pytest.raises(RecordNotFound):
        guard.resolve(424242, "confirmed")
    with pytest.raises(ValueError):
        guard.resolve(record.id, "settled")


def test_limited_batch_takes_oldest_first(make_guard, sqlite_log):
    """With more stuck records than the limit, the oldest ones are checked."""
    records = [
        _pending(sqlite_log, TransferRequest(recipient=f"addr{i}", amount=1), ts=T0 + i)
        for i in range(3)
    ]
    ledger = FakeLedger()
    report = make_guard(ledger=ledger).reconcile_pending(now_ts=LATER, limit=2)
    assert report.checked == 2
    assert report.record_ids["unresolved"] == [records[0].id, records[1].id]
    assert [call[0] for call in ledger.calls] == ["addr0", "addr1"]
