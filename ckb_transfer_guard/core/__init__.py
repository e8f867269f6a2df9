"""
Core utilities: exceptions shared by the guard, the transfer log and the CLI.
"""

from ckb_transfer_guard.core.exceptions import (
    AlreadyExists,
    InvalidStatusTransition,
    InvalidTransferRequest,
    LedgerInconclusive,
    RecordNotFound,
    SubmissionAmbiguous,
    SubmissionFailed,
    TransferGuardError,
    TransferLogError,
)

__all__ = [
    "AlreadyExists",
    "InvalidStatusTransition",
    "InvalidTransferRequest",
    "LedgerInconclusive",
    "RecordNotFound",
    "SubmissionAmbiguous",
    "SubmissionFailed",
    "TransferGuardError",
    "TransferLogError",
]
