"""
Pytest tests for TransferGuard.evaluate: window boundary, status filtering,
tuple sensitivity, and ledger fallback with timeout degradation.
"""

from __future__ import annotations

from fakes import DAY, HOUR, T0, FakeLedger, ledger_entry

from ckb_transfer_guard.database import TransferRequest, TransferStatus
from ckb_transfer_guard.guard import Duplicate, DuplicateSource, Proceed


def _confirmed_at(log, request, ts, identifier):
    record, _ = log.claim(request, ts, request.window_sec or DAY)
    return log.mark_confirmed(record.id, identifier, now_ts=ts)


def test_empty_log_proceeds(make_guard, request_100):
    guard = make_guard()
    assert isinstance(guard.evaluate(request_100), Proceed)


def test_window_boundary(make_guard, sqlite_log, request_100):
    """Confirmed at T: Duplicate at T + window - 1, Proceed at T + window + 1."""
    _confirmed_at(sqlite_log, request_100, T0, "tx1")
    guard = make_guard()

    inside = guard.evaluate(request_100, now_ts=T0 + DAY - 1)
    assert isinstance(inside, Duplicate)
    assert inside.existing_identifier == "tx1"
    assert inside.source is DuplicateSource.LOCAL

    assert isinstance(guard.evaluate(request_100, now_ts=T0 + DAY + 1), Proceed)


def test_request_window_overrides_default(make_guard, sqlite_log):
    """A one-hour cooldown request stops matching after an hour even with a 24h default."""
    short = TransferRequest(recipient="addr1", amount=10, window_sec=HOUR)
    _confirmed_at(sqlite_log, short, T0, "tx1")
    guard = make_guard()
    assert isinstance(guard.evaluate(short, now_ts=T0 + HOUR - 1), Duplicate)
    assert isinstance(guard.evaluate(short, now_ts=T0 + HOUR + 1), Proceed)


def test_failed_record_does_not_block(make_guard, sqlite_log, request_100):
    record, _ = sqlite_log.claim(request_100, T0, DAY)
    sqlite_log.mark_failed(record.id, "rejected", now_ts=T0)
    guard = make_guard()
    assert isinstance(guard.evaluate(request_100, now_ts=T0 + 60), Proceed)


def test_pending_record_blocks(make_guard, sqlite_log, request_100):
    """A pending record with no identifier is still a duplicate."""
    record, _ = sqlite_log.claim(request_100, T0, DAY)
    decision = make_guard().evaluate(request_100, now_ts=T0 + 60)
    assert isinstance(decision, Duplicate)
    assert decision.record_id == record.id
    assert decision.existing_identifier is None


def test_latest_match_wins(make_guard, sqlite_log, request_100):
    """With several matches in the window the most recent record is returned."""
    _confirmed_at(sqlite_log, request_100, T0 - 3 * DAY, "tx-old")
    # Two confirmed records inside one window can only come from a shorter
    # window on the earlier request; claim them with a 1s window.
    one_sec = TransferRequest(recipient="addr1", amount=request_100.amount, window_sec=1)
    _confirmed_at(sqlite_log, one_sec, T0, "tx-a")
    _confirmed_at(sqlite_log, one_sec, T0 + 10, "tx-b")
    decision = make_guard().evaluate(request_100, now_ts=T0 + 20)
    assert isinstance(decision, Duplicate)
    assert decision.existing_identifier == "tx-b"


def test_tuple_sensitivity(make_guard, sqlite_log, request_100):
    """Requests differing in recipient, amount, or asset never match each other."""
    _confirmed_at(sqlite_log, request_100, T0, "tx1")
    guard = make_guard()
    for other in (
        TransferRequest(recipient="addr2", amount=request_100.amount, window_sec=DAY),
        TransferRequest(recipient="addr1", amount=request_100.amount - 1, window_sec=DAY),
        TransferRequest(recipient="addr1", amount=request_100.amount, asset="xudt:0x01", window_sec=DAY),
    ):
        assert isinstance(guard.evaluate(other, now_ts=T0 + 1), Proceed), other


def test_evaluate_does_not_write(make_guard, sqlite_log, request_100):
    guard = make_guard()
    guard.evaluate(request_100)
    guard.evaluate(request_100)
    assert sqlite_log.list_records() == []


# --- ledger fallback ---


def test_ledger_match_when_local_log_empty(make_guard, request_100):
    """After a restart with no local history, a ledger-confirmed transfer is a Duplicate."""
    ledger = FakeLedger([ledger_entry("0xchain", T0 - HOUR)])
    decision = make_guard(ledger=ledger).evaluate(request_100, now_ts=T0)
    assert isinstance(decision, Duplicate)
    assert decision.existing_identifier == "0xchain"
    assert decision.source is DuplicateSource.LEDGER
    assert decision.record_id is None
    assert ledger.calls == [("addr1", request_100.amount, None, T0 - DAY)]


def test_ledger_latest_blocking_entry(make_guard, request_100):
    """Failed ledger entries are ignored; the newest pending/confirmed one is returned."""
    ledger = FakeLedger([
        ledger_entry("0xold", T0 - 5 * HOUR),
        ledger_entry("0xnew", T0 - HOUR, status="pending"),
        ledger_entry("0xbad", T0 - 60, status="failed"),
    ])
    decision = make_guard(ledger=ledger).evaluate(request_100, now_ts=T0)
    assert decision.existing_identifier == "0xnew"


def test_ledger_entry_outside_window_ignored(make_guard, request_100):
    ledger = FakeLedger([ledger_entry("0xancient", T0 - 2 * DAY)])
    assert isinstance(make_guard(ledger=ledger).evaluate(request_100, now_ts=T0), Proceed)


def test_ledger_skipped_when_local_match(make_guard, sqlite_log, request_100):
    """Local log is authoritative: a local match never costs a ledger round-trip."""
    _confirmed_at(sqlite_log, request_100, T0, "tx1")
    ledger = FakeLedger([ledger_entry("0xchain", T0)])
    make_guard(ledger=ledger).evaluate(request_100, now_ts=T0 + 1)
    assert ledger.calls == []


def test_ledger_skipped_when_only_failed_history(make_guard, sqlite_log, request_100):
    """Failed-only local history is conclusive and allows a retry."""
    record, _ = sqlite_log.claim(request_100, T0, DAY)
    sqlite_log.mark_failed(record.id, "rejected", now_ts=T0)
    ledger = FakeLedger([ledger_entry("0xchain", T0)])
    decision = make_guard(ledger=ledger).evaluate(request_100, now_ts=T0 + 1)
    assert isinstance(decision, Proceed)
    assert ledger.calls == []


def test_ledger_disabled(make_guard, request_100):
    ledger = FakeLedger([ledger_entry("0xchain", T0)])
    decision = make_guard(ledger=ledger, consult_ledger=False).evaluate(request_100, now_ts=T0)
    assert isinstance(decision, Proceed)
    assert ledger.calls == []


def test_ledger_timeout_falls_back_to_local(make_guard, request_100):
    """A slow ledger is inconclusive: evaluation returns the local-only decision."""
    ledger = FakeLedger([ledger_entry("0xchain", T0)], delay_sec=1.0)
    guard = make_guard(ledger=ledger, ledger_timeout_sec=0.1)
    assert isinstance(guard.evaluate(request_100, now_ts=T0), Proceed)


def test_ledger_error_falls_back_to_local(make_guard, request_100):
    ledger = FakeLedger(error=ConnectionError("indexer unreachable"))
    assert isinstance(make_guard(ledger=ledger).evaluate(request_100, now_ts=T0), Proceed)


def test_ledger_error_never_hides_local_pending(make_guard, sqlite_log, request_100):
    """Under ledger failure a local pending record still yields Duplicate."""
    sqlite_log.claim(request_100, T0, DAY)
    ledger = FakeLedger(error=RuntimeError("boom"))
    decision = make_guard(ledger=ledger).evaluate(request_100, now_ts=T0 + 5)
    assert isinstance(decision, Duplicate)
    assert sqlite_log.get_record(decision.record_id).status is TransferStatus.PENDING
