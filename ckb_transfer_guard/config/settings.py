"""
Guard settings built from environment variables.

Defaults follow the common agent setup: a 24h idempotency window, a local
SQLite log in the working directory, and ledger fallback enabled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ckb_transfer_guard.config.env import (
    env_bool,
    env_float,
    env_int,
    env_str,
    load_guard_env,
)

DEFAULT_DB_PATH = "transfer_guard.db"
DEFAULT_WINDOW_SEC = 24 * 60 * 60
DEFAULT_LEDGER_TIMEOUT_SEC = 10.0
DEFAULT_RECONCILE_AFTER_SEC = 600
MIN_LEDGER_TIMEOUT_SEC = 0.1


@dataclass
class GuardSettings:
    """
    Settings for TransferGuard and the local transfer log.

    window_sec: Default idempotency window when a request does not carry its own.
    ledger_timeout_sec: Timeout for one ledger lookup; a timeout is treated as inconclusive.
    consult_ledger: Query the ledger when the local log has no history for the tuple.
    confirm_on_submit: Mark records confirmed when the executor returns an identifier;
        False keeps them pending until reconciliation (broadcast-only executors).
    reconcile_after_sec: Minimum age of a pending record before reconcile_pending checks it.
    """

    db_path: str | Path = field(
        default_factory=lambda: Path(env_str("TRANSFER_GUARD_DB_PATH", DEFAULT_DB_PATH))
    )
    window_sec: int = field(
        default_factory=lambda: env_int("TRANSFER_GUARD_WINDOW_SEC", DEFAULT_WINDOW_SEC)
    )
    ledger_timeout_sec: float = field(
        default_factory=lambda: env_float(
            "TRANSFER_GUARD_LEDGER_TIMEOUT_SEC", DEFAULT_LEDGER_TIMEOUT_SEC
        )
    )
    consult_ledger: bool = field(
        default_factory=lambda: env_bool("TRANSFER_GUARD_CONSULT_LEDGER", True)
    )
    confirm_on_submit: bool = field(
        default_factory=lambda: env_bool("TRANSFER_GUARD_CONFIRM_ON_SUBMIT", True)
    )
    reconcile_after_sec: int = field(
        default_factory=lambda: env_int(
            "TRANSFER_GUARD_RECONCILE_AFTER_SEC", DEFAULT_RECONCILE_AFTER_SEC
        )
    )

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        if self.window_sec <= 0:
            self.window_sec = DEFAULT_WINDOW_SEC
        if self.ledger_timeout_sec < MIN_LEDGER_TIMEOUT_SEC:
            self.ledger_timeout_sec = MIN_LEDGER_TIMEOUT_SEC
        if self.reconcile_after_sec < 0:
            self.reconcile_after_sec = 0


def get_settings() -> GuardSettings:
    """Load .env and return settings built from the current environment."""
    load_guard_env()
    return GuardSettings()
