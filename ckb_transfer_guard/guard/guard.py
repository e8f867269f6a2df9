"""
Transfer guard: duplicate check before a transfer is submitted.

Responsibilities:
- evaluate(): look for a pending/confirmed transfer with the same
  (recipient, amount, asset) inside the idempotency window; local log first,
  ledger as fallback when the local log has no history for the tuple.
- submit(): evaluate + claim a pending record atomically per tuple, then call
  the executor and record the outcome.
- reconcile_pending() / resolve(): explicit resolution of records left
  pending by ambiguous failures. Never run implicitly.

Policy: under ambiguity prefer a false duplicate over a second payment.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator

from ckb_transfer_guard.config.settings import GuardSettings
from ckb_transfer_guard.core.exceptions import (
    InvalidStatusTransition,
    LedgerInconclusive,
    RecordNotFound,
    SubmissionAmbiguous,
    SubmissionFailed,
    TransferGuardError,
)
from ckb_transfer_guard.database.database import TransferLog
from ckb_transfer_guard.database.models import (
    BLOCKING_STATUSES,
    TransferKey,
    TransferRecord,
    TransferRequest,
    TransferStatus,
)
from ckb_transfer_guard.guard.classify import (
    DEFAULT_DUPLICATE_MARKERS,
    SubmissionErrorClass,
    classify_submission_error,
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
from ckb_transfer_guard.guard.interfaces import LedgerEntry, LedgerQuery, TransferExecutor
from ckb_transfer_guard.guard_logging import bind_transfer, get_logger

logger = get_logger(__name__)

DEFAULT_LEDGER_WORKERS = 4


class _KeyLocks:
    """One lock per transfer tuple; entries are dropped when no thread holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[TransferKey, list] = {}

    @contextmanager
    def hold(self, key: TransferKey) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class TransferGuard:
    """
    Idempotent front for a TransferExecutor.

    The local log is authoritative. The ledger is consulted only when the log
    holds no record of any status for the tuple inside the window (fresh
    process, lost local state). A local history made only of failed attempts
    is conclusive and allows a retry without the ledger round-trip.
    """

    def __init__(
        self,
        log: TransferLog,
        executor: TransferExecutor | None = None,
        ledger: LedgerQuery | None = None,
        settings: GuardSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        duplicate_markers: Iterable[str] = DEFAULT_DUPLICATE_MARKERS,
    ) -> None:
        """
        Args:
            log: Local transfer log (SQLite for anything that must survive a crash).
            executor: Submits transfers; required for submit(), not for evaluate().
            ledger: Optional read-only chain lookup used as fallback and for reconciliation.
            settings: Window, ledger timeout and confirmation policy; env defaults if None.
            clock: Returns the current unix time; truncated to whole seconds.
            duplicate_markers: Lowercase error substrings meaning "already submitted".
        """
        self._log = log
        self._executor = executor
        self._ledger = ledger
        self._settings = settings or GuardSettings()
        self._clock = clock
        self._duplicate_markers = tuple(duplicate_markers)
        self._key_locks = _KeyLocks()
        self._ledger_pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

    @property
    def settings(self) -> GuardSettings:
        return self._settings

    @property
    def log(self) -> TransferLog:
        return self._log

    def close(self) -> None:
        """Stop ledger worker threads. Lookups still running are abandoned."""
        with self._pool_lock:
            pool, self._ledger_pool = self._ledger_pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "TransferGuard":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def now(self) -> int:
        return int(self._clock())

    def window_for(self, request: TransferRequest) -> int:
        return request.window_sec or self._settings.window_sec

    # --- evaluate ---

    def evaluate(self, request: TransferRequest, *, now_ts: int | None = None) -> Decision:
        """
        Return Duplicate if a pending/confirmed transfer for the same tuple was
        created within the window ending at now_ts, else Proceed. Read-only.
        """
        now_ts = now_ts if now_ts is not None else self.now()
        since_ts = now_ts - self.window_for(request)
        history = self._log.find_matching(request, since_ts, blocking_only=False)

        blocking = [r for r in history if r.status in BLOCKING_STATUSES]
        if blocking:
            latest = blocking[0]
            return Duplicate(latest.identifier, latest.id, DuplicateSource.LOCAL)
        if history:
            # Only failed attempts in the window: the log knows the last try did not land
            return Proceed()

        entry = self._ledger_duplicate(request, since_ts)
        if entry is not None:
            return Duplicate(entry.identifier, None, DuplicateSource.LEDGER)
        return Proceed()

    def _pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._ledger_pool is None:
                self._ledger_pool = ThreadPoolExecutor(
                    max_workers=DEFAULT_LEDGER_WORKERS,
                    thread_name_prefix="ledger-query",
                )
            return self._ledger_pool

    def _query_ledger(
        self,
        recipient: str,
        amount: int,
        asset: str | None,
        since_ts: int,
    ) -> list[LedgerEntry]:
        """Run ledger.find_recent on a worker thread with the configured timeout."""
        if self._ledger is None:
            raise LedgerInconclusive("no ledger configured")
        ledger = self._ledger

        def _fetch() -> list[LedgerEntry]:
            return list(ledger.find_recent(recipient, amount, asset, since_ts))

        future = self._pool().submit(_fetch)
        try:
            return future.result(timeout=self._settings.ledger_timeout_sec)
        except FutureTimeoutError as e:
            future.cancel()
            raise LedgerInconclusive(
                f"ledger query timed out after {self._settings.ledger_timeout_sec}s"
            ) from e
        except Exception as e:
            raise LedgerInconclusive(f"ledger query failed: {e}") from e

    def _ledger_duplicate(self, request: TransferRequest, since_ts: int) -> LedgerEntry | None:
        if self._ledger is None or not self._settings.consult_ledger:
            return None
        try:
            entries = self._query_ledger(request.recipient, request.amount, request.asset, since_ts)
        except LedgerInconclusive as e:
            logger.warning(
                "ledger_query_inconclusive",
                recipient=request.recipient,
                amount=request.amount,
                asset=request.asset,
                error=str(e),
            )
            return None
        matches = [e for e in entries if e.is_blocking and e.timestamp >= since_ts]
        if not matches:
            return None
        return max(matches, key=lambda e: e.timestamp)

    # --- submit ---

    def submit(self, request: TransferRequest) -> TransferOutcome:
        """
        Submit request unless an equivalent transfer exists in the window.

        Returns Duplicate (no executor call) or Submitted. Raises
        TransferLogError if the pending record cannot be written (nothing is
        submitted), SubmissionAmbiguous if the outcome is unknown (record kept
        pending), SubmissionFailed on a definitive rejection (record failed).
        """
        if self._executor is None:
            raise TransferGuardError("submit() requires a TransferExecutor")
        tlog = bind_transfer(request.recipient, request.amount, request.asset)

        with self._key_locks.hold(request.key):
            now_ts = self.now()
            decision = self.evaluate(request, now_ts=now_ts)
            if isinstance(decision, Duplicate):
                tlog.info(
                    "transfer_duplicate",
                    existing_identifier=decision.existing_identifier,
                    record_id=decision.record_id,
                    source=decision.source.value,
                )
                return decision
            record, created = self._log.claim(request, now_ts, self.window_for(request))
            if not created:
                # Another process claimed the tuple between evaluate and claim
                tlog.info(
                    "transfer_duplicate",
                    existing_identifier=record.identifier,
                    record_id=record.id,
                    source=DuplicateSource.LOCAL.value,
                    reason="claim_lost",
                )
                return Duplicate(record.identifier, record.id, DuplicateSource.LOCAL)

        return self._execute(self._executor, request, record)

    def _execute(
        self,
        executor: TransferExecutor,
        request: TransferRequest,
        record: TransferRecord,
    ) -> Submitted:
        tlog = bind_transfer(request.recipient, request.amount, request.asset).bind(
            record_id=record.id
        )
        try:
            identifier = executor.submit(request)
        except Exception as exc:
            classified = classify_submission_error(exc, duplicate_markers=self._duplicate_markers)
            if classified.kind is SubmissionErrorClass.ALREADY_EXISTS:
                self._record_outcome(
                    record, TransferStatus.CONFIRMED, identifier=classified.identifier
                )
                tlog.info("transfer_already_exists", identifier=classified.identifier)
                return Submitted(classified.identifier, record.id)
            if classified.kind is SubmissionErrorClass.AMBIGUOUS:
                tlog.warning("transfer_outcome_ambiguous", error=classified.cause)
                raise SubmissionAmbiguous(exc, record_id=record.id) from exc
            self._record_outcome(record, TransferStatus.FAILED, error=classified.cause)
            tlog.warning("transfer_submission_failed", error=classified.cause)
            raise SubmissionFailed(exc, record_id=record.id) from exc

        if not identifier:
            tlog.warning("transfer_outcome_ambiguous", error="executor returned no identifier")
            raise SubmissionAmbiguous("executor returned no identifier", record_id=record.id)

        identifier = str(identifier)
        if self._settings.confirm_on_submit:
            self._record_outcome(record, TransferStatus.CONFIRMED, identifier=identifier)
        else:
            self._record_outcome(record, TransferStatus.PENDING, identifier=identifier)
        tlog.info("transfer_submitted", identifier=identifier)
        return Submitted(identifier, record.id)

    def _record_outcome(
        self,
        record: TransferRecord,
        status: TransferStatus,
        *,
        identifier: str | None = None,
        error: str | None = None,
    ) -> None:
        """
        Persist the executor outcome. Storage and transition errors here are
        logged, not raised: the transfer already happened (or definitively
        failed) and the caller gets the executor's result.

        If the record was failed out of band while the executor was running
        and the executor reports a broadcast, the record is reinstated so it
        blocks retries again.
        """
        try:
            self._write_outcome(record.id, status, identifier, error)
        except InvalidStatusTransition as e:
            if status is TransferStatus.FAILED or e.current != TransferStatus.FAILED.value:
                self._log_outcome_failure(record, status, identifier, e, current_status=e.current)
                return
            try:
                self._log.reinstate(record.id, status, identifier, now_ts=self.now())
            except TransferGuardError as again:
                self._log_outcome_failure(record, status, identifier, again, current_status=e.current)
        except TransferGuardError as e:
            self._log_outcome_failure(record, status, identifier, e)

    def _write_outcome(
        self,
        record_id: int,
        status: TransferStatus,
        identifier: str | None,
        error: str | None,
    ) -> None:
        if status is TransferStatus.CONFIRMED:
            self._log.mark_confirmed(record_id, identifier, now_ts=self.now())
        elif status is TransferStatus.FAILED:
            self._log.mark_failed(record_id, error, now_ts=self.now())
        elif identifier is not None:
            self._log.attach_identifier(record_id, identifier, now_ts=self.now())

    @staticmethod
    def _log_outcome_failure(
        record: TransferRecord,
        status: TransferStatus,
        identifier: str | None,
        exc: TransferGuardError,
        *,
        current_status: str | None = None,
    ) -> None:
        logger.error(
            "transfer_record_update_failed",
            record_id=record.id,
            status=status.value,
            current_status=current_status,
            identifier=identifier,
            code=exc.code,
            error=str(exc),
        )

    # --- resolution ---

    def resolve(
        self,
        record_id: int,
        status: TransferStatus | str,
        *,
        identifier: str | None = None,
        error: str | None = None,
    ) -> TransferRecord:
        """Manually move a pending record to confirmed or failed (operator intervention)."""
        target = TransferStatus(status)
        now_ts = self.now()
        if target is TransferStatus.CONFIRMED:
            record = self._log.mark_confirmed(record_id, identifier, now_ts=now_ts)
        elif target is TransferStatus.FAILED:
            record = self._log.mark_failed(record_id, error or "resolved by operator", now_ts=now_ts)
        else:
            current = self._log.get_record(record_id)
            if current is None:
                raise RecordNotFound(record_id)
            raise InvalidStatusTransition(record_id, current.status.value, target.value)
        logger.info(
            "transfer_record_resolved",
            record_id=record_id,
            status=record.status.value,
            identifier=record.identifier,
        )
        return record

    def reconcile_pending(
        self,
        *,
        older_than_sec: int | None = None,
        now_ts: int | None = None,
        limit: int = 500,
    ) -> ReconcileReport:
        """
        Check pending records older than older_than_sec against the ledger.

        A record with an identifier follows the ledger status of that
        identifier. A record without one is confirmed by the earliest
        confirmed ledger transfer for its tuple created at or after the record
        that no other local record already claims. Anything else stays pending.
        """
        if self._ledger is None:
            raise TransferGuardError("reconcile_pending() requires a LedgerQuery")
        now_ts = now_ts if now_ts is not None else self.now()
        if older_than_sec is None:
            older_than_sec = self._settings.reconcile_after_sec
        report = ReconcileReport()
        # Oldest first so earlier attempts get the earlier chain transfers and
        # a limited batch never starves the oldest stuck records
        stuck = self._log.list_pending(
            created_before=now_ts - older_than_sec + 1,
            limit=limit,
            oldest_first=True,
        )
        claimed: set[str] = set()

        for record in stuck:
            report.checked += 1
            try:
                entries = self._query_ledger(
                    record.recipient, record.amount, record.asset, record.created_at
                )
            except LedgerInconclusive as e:
                logger.warning("reconcile_ledger_inconclusive", record_id=record.id, error=str(e))
                report.note("inconclusive", record.id)
                continue
            outcome = self._reconcile_one(record, entries, claimed, now_ts)
            report.note(outcome, record.id)

        logger.info("reconcile_pending_done", **report.to_dict())
        return report

    def _reconcile_one(
        self,
        record: TransferRecord,
        entries: list[LedgerEntry],
        claimed: set[str],
        now_ts: int,
    ) -> str:
        if record.identifier:
            own = [e for e in entries if e.identifier == record.identifier]
            if not own:
                return "unresolved"
            entry = max(own, key=lambda e: e.timestamp)
            if entry.status is TransferStatus.CONFIRMED:
                self._log.mark_confirmed(record.id, record.identifier, now_ts=now_ts)
                return "confirmed"
            if entry.status is TransferStatus.FAILED:
                self._log.mark_failed(record.id, "ledger reports transaction failed", now_ts=now_ts)
                return "failed"
            return "unresolved"

        known = {
            r.identifier
            for r in self._log.backend.find_matching(record.key, 0)
            if r.identifier
        }
        candidates = sorted(
            (
                e for e in entries
                if e.status is TransferStatus.CONFIRMED
                and e.timestamp >= record.created_at
                and e.identifier not in known
                and e.identifier not in claimed
            ),
            key=lambda e: e.timestamp,
        )
        if not candidates:
            return "unresolved"
        entry = candidates[0]
        claimed.add(entry.identifier)
        self._log.mark_confirmed(record.id, entry.identifier, now_ts=now_ts)
        return "confirmed"
