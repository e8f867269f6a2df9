"""
Local transfer log: one record per submission attempt.

SQLite via TransferLog and get_transfer_log(); an in-memory backend for tests
and ephemeral agents.
"""

from ckb_transfer_guard.database.database import (
    InMemoryBackend,
    SQLiteBackend,
    TransferLog,
    TransferLogBackend,
    get_memory_log,
    get_transfer_log,
)
from ckb_transfer_guard.database.models import (
    BLOCKING_STATUSES,
    TransferRecord,
    TransferRequest,
    TransferStatus,
)

__all__ = [
    "BLOCKING_STATUSES",
    "InMemoryBackend",
    "SQLiteBackend",
    "TransferLog",
    "TransferLogBackend",
    "TransferRecord",
    "TransferRequest",
    "TransferStatus",
    "get_memory_log",
    "get_transfer_log",
]
