"""
Results returned by TransferGuard.evaluate and TransferGuard.submit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class DuplicateSource(str, Enum):
    """Where the matching transfer was found."""

    LOCAL = "local"
    LEDGER = "ledger"


@dataclass(frozen=True)
class Proceed:
    """No matching transfer inside the window; the caller may submit."""

    def to_dict(self) -> dict[str, Any]:
        return {"decision": "proceed"}


@dataclass(frozen=True)
class Duplicate:
    """
    A matching pending/confirmed transfer exists inside the window; do not resubmit.

    existing_identifier is None when the match is a pending record whose
    executor call never returned. record_id is None for ledger matches.
    """

    existing_identifier: str | None
    record_id: int | None = None
    source: DuplicateSource = DuplicateSource.LOCAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": "duplicate",
            "existing_identifier": self.existing_identifier,
            "record_id": self.record_id,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class Submitted:
    """A new submission was accepted (or the node reported it already had it)."""

    identifier: str | None
    record_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": "submitted",
            "identifier": self.identifier,
            "record_id": self.record_id,
        }


Decision = Union[Proceed, Duplicate]
TransferOutcome = Union[Submitted, Duplicate]


@dataclass
class ReconcileReport:
    """Counts from one reconcile_pending pass."""

    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    unresolved: int = 0
    inconclusive: int = 0
    record_ids: dict[str, list[int]] = field(default_factory=dict)

    def note(self, outcome: str, record_id: int | None) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)
        if record_id is not None:
            self.record_ids.setdefault(outcome, []).append(record_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "unresolved": self.unresolved,
            "inconclusive": self.inconclusive,
            "record_ids": self.record_ids,
        }
