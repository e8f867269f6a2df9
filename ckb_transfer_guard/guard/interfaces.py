"""
Collaborator interfaces consumed by TransferGuard.

The guard never builds, signs or looks up transactions itself. Implement
these against a CKB node, an indexer, or a wallet service.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from ckb_transfer_guard.database.models import BLOCKING_STATUSES, TransferRequest, TransferStatus


@dataclass(frozen=True)
class LedgerEntry:
    """One on-chain (or mempool) transaction reported by a LedgerQuery."""

    identifier: str
    timestamp: int
    """Unix timestamp (seconds): block time, or first-seen time for pool transactions."""
    status: TransferStatus

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES


class LedgerQuery(ABC):
    """Read-only lookup of past transfers."""

    @abstractmethod
    def find_recent(
        self,
        recipient: str,
        amount: int,
        asset: str | None,
        since_ts: int,
    ) -> Iterable[LedgerEntry]:
        """
        Return transfers to recipient of exactly amount of asset (None = native)
        at or after since_ts. May be lazy; must be finite. May block on network I/O.
        """
        ...


class TransferExecutor(ABC):
    """Builds, signs and submits a transfer."""

    @abstractmethod
    def submit(self, request: TransferRequest) -> str:
        """
        Submit the transfer and return its identifier (transaction hash).

        Raises AlreadyExists(identifier) when the node reports the transaction
        is already known, SubmissionFailed(cause) for any other failure it
        considers definitive (the record is marked failed and a retry may
        go out). Raise SubmissionAmbiguous, or let TimeoutError /
        ConnectionError propagate, when the node may have accepted it.
        """
        ...
