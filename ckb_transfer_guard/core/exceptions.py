"""
Application-level exceptions.

Every error carries a stable ``code`` so callers and the operator CLI can
branch on it without matching message text.
"""

from __future__ import annotations


class TransferGuardError(Exception):
    """Base class for all transfer guard errors."""

    code = "transfer_guard_error"


class InvalidTransferRequest(TransferGuardError, ValueError):
    """Request fields failed validation (empty recipient, negative amount, bad window)."""

    code = "invalid_request"


class TransferLogError(TransferGuardError):
    """The local transfer log could not be read or written."""

    code = "log_error"


class RecordNotFound(TransferGuardError):
    code = "record_not_found"

    def __init__(self, record_id: int) -> None:
        super().__init__(f"Transfer record {record_id} not found")
        self.record_id = record_id


class InvalidStatusTransition(TransferGuardError):
    """Only pending -> confirmed and pending -> failed are allowed."""

    code = "invalid_transition"

    def __init__(self, record_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Transfer record {record_id} cannot move from {current} to {target}"
        )
        self.record_id = record_id
        self.current = current
        self.target = target


class AlreadyExists(TransferGuardError):
    """
    Raised by a TransferExecutor when the chain or node reports the exact
    transfer was already accepted. identifier is the existing transaction
    hash when the node reports it.
    """

    code = "already_exists"

    def __init__(self, identifier: str | None = None, message: str | None = None) -> None:
        super().__init__(message or f"Transfer already exists: {identifier or 'unknown'}")
        self.identifier = identifier


class SubmissionFailed(TransferGuardError):
    """The executor rejected the transfer; a retry re-enters evaluate and may proceed."""

    code = "submission_failed"

    def __init__(
        self,
        cause: BaseException | str | None = None,
        *,
        record_id: int | None = None,
    ) -> None:
        text = str(cause) if cause is not None else "submission failed"
        super().__init__(text)
        self.cause = cause
        self.record_id = record_id


class SubmissionAmbiguous(SubmissionFailed):
    """
    The executor did not report a definitive outcome (timeout, dropped
    connection). The pending record is kept so a retry is blocked as a
    duplicate until an operator or reconciliation resolves it.
    """

    code = "submission_ambiguous"


class LedgerInconclusive(TransferGuardError):
    """Ledger lookup timed out or failed; evaluation falls back to the local log."""

    code = "ledger_inconclusive"
