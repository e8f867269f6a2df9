"""
Domain models for the local transfer log.

Transfer requests (caller intent) and transfer records (one per submission
attempt). No ORM coupling so backends stay swappable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ckb_transfer_guard.core.exceptions import InvalidTransferRequest

MAX_AMOUNT = 2**128

TransferKey = tuple[str, int, str | None]


class TransferStatus(str, Enum):
    """Record lifecycle: pending -> confirmed | failed. Terminal states never change."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransferStatus.PENDING


# Statuses that count as an issued transfer when matching duplicates
BLOCKING_STATUSES = (TransferStatus.PENDING, TransferStatus.CONFIRMED)


@dataclass(frozen=True)
class TransferRequest:
    """
    Caller intent to pay ``amount`` (smallest unit, e.g. shannons) of ``asset``
    to ``recipient``.

    asset None means the native asset. window_sec None means the guard default.
    Recipient and asset are compared exactly; callers normalize addresses first.
    """

    recipient: str
    amount: int
    asset: str | None = None
    window_sec: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.recipient, str) or not self.recipient.strip():
            raise InvalidTransferRequest("recipient must be a non-empty string")
        if self.asset is not None and (not isinstance(self.asset, str) or not self.asset.strip()):
            raise InvalidTransferRequest("asset must be None or a non-empty string")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise InvalidTransferRequest("amount must be an integer in the smallest unit")
        if not (0 <= self.amount < MAX_AMOUNT):
            raise InvalidTransferRequest("amount must be in [0, 2**128)")
        if self.window_sec is not None:
            if isinstance(self.window_sec, bool) or not isinstance(self.window_sec, int):
                raise InvalidTransferRequest("window_sec must be an integer number of seconds")
            if self.window_sec <= 0:
                raise InvalidTransferRequest("window_sec must be positive")

    @property
    def key(self) -> TransferKey:
        return (self.recipient, self.amount, self.asset)


@dataclass
class TransferRecord:
    """Single submission attempt in the local log."""

    id: int | None
    recipient: str
    amount: int
    asset: str | None
    status: TransferStatus
    created_at: int
    """Unix timestamp (seconds) when the pending record was written."""
    identifier: str | None = None
    """Transaction hash from the executor; None until known."""
    updated_at: int | None = None
    error: str | None = None
    """Failure cause for failed records; null otherwise."""

    @property
    def key(self) -> TransferKey:
        return (self.recipient, self.amount, self.asset)

    def matches(self, request: TransferRequest) -> bool:
        return self.key == request.key

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "asset": self.asset,
            "status": self.status.value,
            "created_at": self.created_at,
            "identifier": self.identifier,
            "updated_at": self.updated_at,
            "error": self.error,
        }
