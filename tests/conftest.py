"""
Pytest fixtures for transfer guard tests. Uses a temporary SQLite transfer log,
a controllable clock, and fake executor/ledger collaborators from fakes.py.
"""

from __future__ import annotations

import pytest
from fakes import DAY, FakeClock, FakeExecutor

from ckb_transfer_guard.config import GuardSettings
from ckb_transfer_guard.database import TransferRequest, get_memory_log, get_transfer_log


@pytest.fixture(autouse=True)
def _clean_guard_env(monkeypatch):
    """Keep developer TRANSFER_GUARD_* variables out of tests."""
    for name in (
        "TRANSFER_GUARD_DB_PATH",
        "TRANSFER_GUARD_WINDOW_SEC",
        "TRANSFER_GUARD_LEDGER_TIMEOUT_SEC",
        "TRANSFER_GUARD_CONSULT_LEDGER",
        "TRANSFER_GUARD_CONFIRM_ON_SUBMIT",
        "TRANSFER_GUARD_RECONCILE_AFTER_SEC",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "transfer_guard.db"


@pytest.fixture
def settings(db_path):
    return GuardSettings(
        db_path=db_path,
        window_sec=DAY,
        ledger_timeout_sec=0.5,
        consult_ledger=True,
        confirm_on_submit=True,
        reconcile_after_sec=600,
    )


@pytest.fixture
def sqlite_log(db_path):
    """Fresh SQLite transfer log in a temp dir."""
    return get_transfer_log(db_path)


@pytest.fixture(params=["sqlite", "memory"])
def any_log(request, tmp_path):
    """Both backends, for behaviour that must not depend on storage."""
    if request.param == "sqlite":
        return get_transfer_log(tmp_path / "param.db")
    return get_memory_log()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def make_guard(sqlite_log, settings, clock):
    """Factory: TransferGuard over the temp SQLite log with the fake clock."""
    from ckb_transfer_guard.guard import TransferGuard

    guards = []

    def _make(executor=None, ledger=None, log=None, **overrides):
        cfg = settings
        if overrides:
            cfg = GuardSettings(**{**vars(settings), **overrides})
        guard = TransferGuard(log or sqlite_log, executor, ledger, cfg, clock=clock)
        guards.append(guard)
        return guard

    yield _make
    for guard in guards:
        guard.close()


@pytest.fixture
def request_100():
    """1000 CKB (100_000_000_000 shannons) native transfer to addr1 with a 24h window."""
    return TransferRequest(recipient="addr1", amount=100_000_000_000, window_sec=DAY)
