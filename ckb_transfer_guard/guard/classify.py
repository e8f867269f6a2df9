"""
Classify executor errors: already-exists, ambiguous, or rejected.

already_exists: the node already has this exact transaction; treat as success.
ambiguous: the outcome is unknown (timeout, dropped connection); keep the record pending.
rejected: a definitive failure; the record is marked failed and a retry may proceed.
"""

from __future__ import annotations

import concurrent.futures
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from ckb_transfer_guard.core.exceptions import (
    AlreadyExists,
    SubmissionAmbiguous,
    SubmissionFailed,
)

# Lowercase substrings that mean "the node already has this transaction".
# PoolRejectedDuplicatedTransaction is CKB's tx-pool error (-1107).
DEFAULT_DUPLICATE_MARKERS = (
    "poolrejectedduplicatedtransaction",
    "duplicated transaction",
    "transaction already exists",
    "transaction already in pool",
    "tx already exists in the pool",
)

# 32-byte hash, 0x-prefixed (CKB transaction hash)
TX_HASH_RE = re.compile(r"0x[0-9a-fA-F]{64}")

AMBIGUOUS_EXCEPTIONS: tuple[type[BaseException], ...] = (
    SubmissionAmbiguous,
    TimeoutError,
    concurrent.futures.TimeoutError,
    ConnectionError,
)

# Guard against cyclic __cause__ chains
MAX_CAUSE_DEPTH = 8


class SubmissionErrorClass(str, Enum):
    ALREADY_EXISTS = "already_exists"
    AMBIGUOUS = "ambiguous"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ClassifiedError:
    kind: SubmissionErrorClass
    identifier: str | None = None
    """Existing transaction hash for already_exists, when known."""
    cause: str = ""


def extract_identifier(text: str) -> str | None:
    """Return the first 0x-prefixed 32-byte hash in text, lowercased, or None."""
    m = TX_HASH_RE.search(text or "")
    return m.group(0).lower() if m else None


def _has_duplicate_marker(text: str, markers: Iterable[str]) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in markers)


def _cause_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and len(chain) < MAX_CAUSE_DEPTH:
        chain.append(current)
        nxt = current.__cause__
        if isinstance(current, SubmissionFailed) and isinstance(current.cause, BaseException):
            nxt = nxt or current.cause
        current = nxt if nxt is not current else None
    return chain


def _is_ambiguous(chain: list[BaseException]) -> bool:
    # A SubmissionFailed raised by the executor is its verdict; causes behind it are not consulted
    for err in chain:
        if isinstance(err, SubmissionAmbiguous):
            return True
        if isinstance(err, SubmissionFailed):
            return False
        if isinstance(err, AMBIGUOUS_EXCEPTIONS):
            return True
    return False


def classify_submission_error(
    exc: BaseException,
    *,
    duplicate_markers: Iterable[str] = DEFAULT_DUPLICATE_MARKERS,
) -> ClassifiedError:
    """
    Classify an exception raised by TransferExecutor.submit.

    AlreadyExists anywhere in the cause chain wins. Timeouts and connection
    errors are ambiguous unless the executor already reported them as
    SubmissionFailed, which is a definitive failure. Otherwise each message
    in the chain is checked for duplicate-transaction markers (nodes often
    report the duplicate only as an RPC error string); the hash is taken
    from the message that matched.
    """
    markers = tuple(m.lower() for m in duplicate_markers)
    chain = _cause_chain(exc)
    text = " | ".join(str(e) for e in chain if str(e))

    for err in chain:
        if isinstance(err, AlreadyExists):
            return ClassifiedError(
                SubmissionErrorClass.ALREADY_EXISTS,
                identifier=err.identifier or extract_identifier(str(err)),
                cause=text,
            )

    if _is_ambiguous(chain):
        return ClassifiedError(SubmissionErrorClass.AMBIGUOUS, cause=text)

    for err in chain:
        message = str(err)
        if _has_duplicate_marker(message, markers):
            return ClassifiedError(
                SubmissionErrorClass.ALREADY_EXISTS,
                identifier=extract_identifier(message),
                cause=text,
            )
    return ClassifiedError(SubmissionErrorClass.REJECTED, cause=text or type(exc).__name__)
