"""
Transfer guard: duplicate-payment prevention in front of a transfer executor.

evaluate() decides Proceed/Duplicate; submit() evaluates, claims a pending
record and calls the executor; reconcile_pending() and resolve() clear records
left pending by ambiguous failures.
"""

from ckb_transfer_guard.guard.classify import (
    ClassifiedError,
    SubmissionErrorClass,
    classify_submission_error,
    extract_identifier,
)
from ckb_transfer_guard.guard.decisions import (
    Decision,
    Duplicate,
    DuplicateSource,
    Proceed,
    ReconcileReport,
    Submitted,
    TransferOutcome,
)
from ckb_transfer_guard.guard.guard import TransferGuard
from ckb_transfer_guard.guard.interfaces import LedgerEntry, LedgerQuery, TransferExecutor

__all__ = [
    "ClassifiedError",
    "Decision",
    "Duplicate",
    "DuplicateSource",
    "LedgerEntry",
    "LedgerQuery",
    "Proceed",
    "ReconcileReport",
    "Submitted",
    "SubmissionErrorClass",
    "TransferExecutor",
    "TransferGuard",
    "TransferOutcome",
    "classify_submission_error",
    "extract_identifier",
]
