"""
Environment variable loading for the transfer guard.

- TRANSFER_GUARD_DB_PATH: SQLite file for the local transfer log
- TRANSFER_GUARD_WINDOW_SEC: default idempotency window (seconds)
- TRANSFER_GUARD_LEDGER_TIMEOUT_SEC: bound on each ledger lookup
- TRANSFER_GUARD_CONSULT_LEDGER: query the ledger when the local log has no history
- TRANSFER_GUARD_CONFIRM_ON_SUBMIT: mark records confirmed as soon as the executor returns
- TRANSFER_GUARD_RECONCILE_AFTER_SEC: age before a pending record is eligible for reconciliation
- Loads .env from the working directory, then from the project root.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"


def load_guard_env() -> None:
    """Load .env files without overriding variables already set. Safe to call multiple times."""
    load_dotenv(Path.cwd() / ".env", override=False)
    load_dotenv(_ENV_PATH, override=False)


def env_str(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
