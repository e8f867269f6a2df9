"""
Local transfer log: one row per submission attempt, looked up by
(recipient, amount, asset) and creation time.

SQLite is the durable backend; several agent processes may share one file and
the pending-claim runs inside a BEGIN IMMEDIATE transaction so only one of
them can claim a tuple per window. An in-memory backend with the same
semantics serves tests and short-lived agents. All access goes through the
abstract interface.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Iterator

from ckb_transfer_guard.core.exceptions import (
    InvalidStatusTransition,
    RecordNotFound,
    TransferLogError,
)
from ckb_transfer_guard.database.models import (
    BLOCKING_STATUSES,
    TransferKey,
    TransferRecord,
    TransferRequest,
    TransferStatus,
)
from ckb_transfer_guard.guard_logging import get_logger

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Schema (SQLite). amount is decimal TEXT: u128 amounts overflow INTEGER.
# -----------------------------------------------------------------------------

SCHEMA_TRANSFER_RECORDS = """
CREATE TABLE IF NOT EXISTS transfer_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient TEXT NOT NULL,
    amount TEXT NOT NULL,
    asset TEXT,
    status TEXT NOT NULL CHECK (status IN ('pending', 'confirmed', 'failed')),
    identifier TEXT,
    error TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER
);
CREATE INDEX IF NOT EXISTS ix_transfer_records_key ON transfer_records(recipient, amount, asset, created_at);
CREATE INDEX IF NOT EXISTS ix_transfer_records_status ON transfer_records(status, created_at);
CREATE INDEX IF NOT EXISTS ix_transfer_records_identifier ON transfer_records(identifier);
"""

_RECORD_COLUMNS = "id, recipient, amount, asset, status, identifier, error, created_at, updated_at"


def _row_to_record(row: Any) -> TransferRecord:
    return TransferRecord(
        id=row["id"],
        recipient=row["recipient"],
        amount=int(row["amount"]),
        asset=row["asset"],
        status=TransferStatus(row["status"]),
        created_at=row["created_at"],
        identifier=row["identifier"],
        updated_at=row["updated_at"],
        error=row["error"],
    )


def _check_transition(
    record: TransferRecord,
    target: TransferStatus,
    from_statuses: Iterable[TransferStatus] = (TransferStatus.PENDING,),
) -> None:
    if record.status not in tuple(from_statuses):
        raise InvalidStatusTransition(record.id or 0, record.status.value, target.value)


# -----------------------------------------------------------------------------
# Abstract backend
# -----------------------------------------------------------------------------


class TransferLogBackend(ABC):
    """Abstract persistence for transfer records; implement for SQLite, memory, or PostgreSQL."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        ...

    @abstractmethod
    def claim(
        self,
        request: TransferRequest,
        now_ts: int,
        window_sec: int,
    ) -> tuple[TransferRecord, bool]:
        """
        Atomically look for a pending/confirmed record for the request's tuple
        created at or after now_ts - window_sec; if none, insert a pending record.
        Returns (record, created): created is False when an existing record won.
        """
        ...

    @abstractmethod
    def find_matching(
        self,
        key: TransferKey,
        since_ts: int,
        statuses: Iterable[TransferStatus] | None = None,
    ) -> list[TransferRecord]:
        """Return records for the tuple with created_at >= since_ts, newest first."""
        ...

    @abstractmethod
    def get_record(self, record_id: int) -> TransferRecord | None:
        ...

    @abstractmethod
    def update_status(
        self,
        record_id: int,
        status: TransferStatus,
        now_ts: int,
        *,
        identifier: str | None = None,
        error: str | None = None,
        from_statuses: Iterable[TransferStatus] = (TransferStatus.PENDING,),
    ) -> TransferRecord:
        """
        Move a record to status. identifier/error are stored when given; an
        existing identifier is kept when identifier is None. Moving a pending
        record to PENDING only attaches the identifier. from_statuses lists the
        statuses the record may be in (default: pending only); anything else
        raises InvalidStatusTransition. Raises RecordNotFound.
        """
        ...

    @abstractmethod
    def list_records(
        self,
        *,
        status: TransferStatus | None = None,
        recipient: str | None = None,
        created_before: int | None = None,
        limit: int = 100,
        oldest_first: bool = False,
    ) -> list[TransferRecord]:
        """Return records newest first (oldest first when asked), optionally filtered."""
        ...

    @abstractmethod
    def delete_before(
        self,
        before_ts: int,
        statuses: Iterable[TransferStatus] = (TransferStatus.CONFIRMED, TransferStatus.FAILED),
    ) -> int:
        """Delete records created before before_ts with the given statuses. Returns count deleted."""
        ...


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(TransferLogBackend):
    """SQLite implementation; single file, one connection per operation, explicit transactions."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")
        return conn

    @contextmanager
    def _cursor(self, *, immediate: bool = False) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as e:
            raise TransferLogError(f"cannot open transfer log {self._path}: {e}") from e
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield cur
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise TransferLogError(f"transfer log operation failed: {e}") from e
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as e:
            raise TransferLogError(f"cannot open transfer log {self._path}: {e}") from e
        try:
            conn.executescript(SCHEMA_TRANSFER_RECORDS)
        except sqlite3.Error as e:
            raise TransferLogError(f"cannot create transfer log schema: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _select_matching(
        cur: sqlite3.Cursor,
        key: TransferKey,
        since_ts: int,
        statuses: Iterable[TransferStatus] | None,
    ) -> list[TransferRecord]:
        recipient, amount, asset = key
        sql = f"""
            SELECT {_RECORD_COLUMNS}
            FROM transfer_records
            WHERE recipient = ? AND amount = ? AND asset IS ? AND created_at >= ?
        """
        params: list[Any] = [recipient, str(amount), asset, since_ts]
        if statuses is not None:
            values = [s.value for s in statuses]
            sql += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at DESC, id DESC"
        cur.execute(sql, params)
        return [_row_to_record(row) for row in cur.fetchall()]

    def claim(
        self,
        request: TransferRequest,
        now_ts: int,
        window_sec: int,
    ) -> tuple[TransferRecord, bool]:
        with self._cursor(immediate=True) as cur:
            existing = self._select_matching(
                cur, request.key, now_ts - window_sec, BLOCKING_STATUSES
            )
            if existing:
                return existing[0], False
            cur.execute(
                """
                INSERT INTO transfer_records (recipient, amount, asset, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    request.recipient,
                    str(request.amount),
                    request.asset,
                    TransferStatus.PENDING.value,
                    now_ts,
                    now_ts,
                ),
            )
            record = TransferRecord(
                id=cur.lastrowid,
                recipient=request.recipient,
                amount=request.amount,
                asset=request.asset,
                status=TransferStatus.PENDING,
                created_at=now_ts,
                updated_at=now_ts,
            )
        return record, True

    def find_matching(
        self,
        key: TransferKey,
        since_ts: int,
        statuses: Iterable[TransferStatus] | None = None,
    ) -> list[TransferRecord]:
        with self._cursor() as cur:
            return self._select_matching(cur, key, since_ts, statuses)

    def get_record(self, record_id: int) -> TransferRecord | None:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM transfer_records WHERE id = ?",
                (record_id,),
            )
            row = cur.fetchone()
        return _row_to_record(row) if row is not None else None

    def update_status(
        self,
        record_id: int,
        status: TransferStatus,
        now_ts: int,
        *,
        identifier: str | None = None,
        error: str | None = None,
        from_statuses: Iterable[TransferStatus] = (TransferStatus.PENDING,),
    ) -> TransferRecord:
        with self._cursor(immediate=True) as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM transfer_records WHERE id = ?",
                (record_id,),
            )
            row = cur.fetchone()
            if row is None:
                raise RecordNotFound(record_id)
            record = _row_to_record(row)
            _check_transition(record, status, from_statuses)
            previous = record.status
            record.status = status
            record.identifier = identifier if identifier is not None else record.identifier
            record.error = error if error is not None else record.error
            record.updated_at = now_ts
            cur.execute(
                """
                UPDATE transfer_records
                SET status = ?, identifier = ?, error = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    record.identifier,
                    record.error,
                    now_ts,
                    record_id,
                    previous.value,
                ),
            )
        return record

    def list_records(
        self,
        *,
        status: TransferStatus | None = None,
        recipient: str | None = None,
        created_before: int | None = None,
        limit: int = 100,
        oldest_first: bool = False,
    ) -> list[TransferRecord]:
        sql = f"SELECT {_RECORD_COLUMNS} FROM transfer_records WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if recipient is not None:
            sql += " AND recipient = ?"
            params.append(recipient)
        if created_before is not None:
            sql += " AND created_at < ?"
            params.append(created_before)
        order = "ASC" if oldest_first else "DESC"
        sql += f" ORDER BY created_at {order}, id {order} LIMIT ?"
        params.append(limit)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [_row_to_record(row) for row in cur.fetchall()]

    def delete_before(
        self,
        before_ts: int,
        statuses: Iterable[TransferStatus] = (TransferStatus.CONFIRMED, TransferStatus.FAILED),
    ) -> int:
        values = [s.value for s in statuses]
        if not values:
            return 0
        with self._cursor(immediate=True) as cur:
            cur.execute(
                f"""
                DELETE FROM transfer_records
                WHERE created_at < ? AND status IN ({', '.join('?' for _ in values)})
                """,
                [before_ts, *values],
            )
            return cur.rowcount


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------


class InMemoryBackend(TransferLogBackend):
    """Process-local backend; a single lock makes claim atomic. Nothing survives a restart."""

    def __init__(self) -> None:
        self._records: dict[int, TransferRecord] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def ensure_schema(self) -> None:
        return None

    def _matching(
        self,
        key: TransferKey,
        since_ts: int,
        statuses: Iterable[TransferStatus] | None,
    ) -> list[TransferRecord]:
        wanted = set(statuses) if statuses is not None else None
        found = [
            r for r in self._records.values()
            if r.key == key
            and r.created_at >= since_ts
            and (wanted is None or r.status in wanted)
        ]
        found.sort(key=lambda r: (r.created_at, r.id or 0), reverse=True)
        return [_copy(r) for r in found]

    def claim(
        self,
        request: TransferRequest,
        now_ts: int,
        window_sec: int,
    ) -> tuple[TransferRecord, bool]:
        with self._lock:
            existing = self._matching(request.key, now_ts - window_sec, BLOCKING_STATUSES)
            if existing:
                return existing[0], False
            record = TransferRecord(
                id=self._next_id,
                recipient=request.recipient,
                amount=request.amount,
                asset=request.asset,
                status=TransferStatus.PENDING,
                created_at=now_ts,
                updated_at=now_ts,
            )
            self._records[record.id] = record
            self._next_id += 1
            return _copy(record), True

    def find_matching(
        self,
        key: TransferKey,
        since_ts: int,
        statuses: Iterable[TransferStatus] | None = None,
    ) -> list[TransferRecord]:
        with self._lock:
            return self._matching(key, since_ts, statuses)

    def get_record(self, record_id: int) -> TransferRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return _copy(record) if record is not None else None

    def update_status(
        self,
        record_id: int,
        status: TransferStatus,
        now_ts: int,
        *,
        identifier: str | None = None,
        error: str | None = None,
        from_statuses: Iterable[TransferStatus] = (TransferStatus.PENDING,),
    ) -> TransferRecord:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFound(record_id)
            _check_transition(record, status, from_statuses)
            record.status = status
            if identifier is not None:
                record.identifier = identifier
            if error is not None:
                record.error = error
            record.updated_at = now_ts
            return _copy(record)

    def list_records(
        self,
        *,
        status: TransferStatus | None = None,
        recipient: str | None = None,
        created_before: int | None = None,
        limit: int = 100,
        oldest_first: bool = False,
    ) -> list[TransferRecord]:
        with self._lock:
            found = [
                r for r in self._records.values()
                if (status is None or r.status is status)
                and (recipient is None or r.recipient == recipient)
                and (created_before is None or r.created_at < created_before)
            ]
            found.sort(key=lambda r: (r.created_at, r.id or 0), reverse=not oldest_first)
            return [_copy(r) for r in found[:limit]]

    def delete_before(
        self,
        before_ts: int,
        statuses: Iterable[TransferStatus] = (TransferStatus.CONFIRMED, TransferStatus.FAILED),
    ) -> int:
        wanted = set(statuses)
        with self._lock:
            doomed = [
                rid for rid, r in self._records.items()
                if r.created_at < before_ts and r.status in wanted
            ]
            for rid in doomed:
                del self._records[rid]
            return len(doomed)


def _copy(record: TransferRecord) -> TransferRecord:
    return replace(record)


# -----------------------------------------------------------------------------
# Transfer log facade: single entrypoint; backend is swappable.
# -----------------------------------------------------------------------------


class TransferLog:
    """
    Append-and-update log of transfer attempts.

    Never deletes records on its own; prune() exists for external retention
    policy and refuses to touch pending records.
    """

    def __init__(self, backend: TransferLogBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> TransferLogBackend:
        return self._backend

    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        self._backend.ensure_schema()

    def claim(
        self,
        request: TransferRequest,
        now_ts: int,
        window_sec: int,
    ) -> tuple[TransferRecord, bool]:
        """Atomic check-and-insert of a pending record. Returns (record, created)."""
        record, created = self._backend.claim(request, now_ts, window_sec)
        if created:
            logger.info(
                "transfer_record_pending",
                record_id=record.id,
                recipient=record.recipient,
                amount=record.amount,
                asset=record.asset,
            )
        return record, created

    def find_matching(
        self,
        request: TransferRequest,
        since_ts: int,
        *,
        blocking_only: bool = True,
    ) -> list[TransferRecord]:
        """Records for the request's tuple created at or after since_ts, newest first."""
        statuses = BLOCKING_STATUSES if blocking_only else None
        return self._backend.find_matching(request.key, since_ts, statuses)

    def get_record(self, record_id: int) -> TransferRecord | None:
        return self._backend.get_record(record_id)

    def mark_confirmed(
        self,
        record_id: int,
        identifier: str | None = None,
        now_ts: int | None = None,
    ) -> TransferRecord:
        now_ts = now_ts if now_ts is not None else int(time.time())
        record = self._backend.update_status(
            record_id, TransferStatus.CONFIRMED, now_ts, identifier=identifier
        )
        logger.info("transfer_record_confirmed", record_id=record_id, identifier=record.identifier)
        return record

    def mark_failed(
        self,
        record_id: int,
        error: str | None = None,
        now_ts: int | None = None,
    ) -> TransferRecord:
        now_ts = now_ts if now_ts is not None else int(time.time())
        record = self._backend.update_status(
            record_id, TransferStatus.FAILED, now_ts, error=error or "unknown"
        )
        logger.info("transfer_record_failed", record_id=record_id, error=record.error)
        return record

    def attach_identifier(
        self,
        record_id: int,
        identifier: str,
        now_ts: int | None = None,
    ) -> TransferRecord:
        """Store the identifier on a pending record without changing its status."""
        now_ts = now_ts if now_ts is not None else int(time.time())
        return self._backend.update_status(
            record_id, TransferStatus.PENDING, now_ts, identifier=identifier
        )

    def reinstate(
        self,
        record_id: int,
        status: TransferStatus,
        identifier: str | None = None,
        now_ts: int | None = None,
    ) -> TransferRecord:
        """
        Move a failed record back to confirmed or pending.

        Used when the executor reports a broadcast after the record was failed
        out of band (operator resolve during an in-flight submit); the record
        must block retries again.
        """
        if status not in BLOCKING_STATUSES:
            raise ValueError(f"cannot reinstate a record as {status.value}")
        now_ts = now_ts if now_ts is not None else int(time.time())
        record = self._backend.update_status(
            record_id,
            status,
            now_ts,
            identifier=identifier,
            from_statuses=(TransferStatus.FAILED,),
        )
        logger.warning(
            "transfer_record_reinstated",
            record_id=record_id,
            status=record.status.value,
            identifier=record.identifier,
        )
        return record

    def list_records(
        self,
        *,
        status: TransferStatus | None = None,
        recipient: str | None = None,
        created_before: int | None = None,
        limit: int = 100,
        oldest_first: bool = False,
    ) -> list[TransferRecord]:
        return self._backend.list_records(
            status=status,
            recipient=recipient,
            created_before=created_before,
            limit=limit,
            oldest_first=oldest_first,
        )

    def list_pending(
        self,
        *,
        created_before: int | None = None,
        limit: int = 500,
        oldest_first: bool = False,
    ) -> list[TransferRecord]:
        """Pending records, newest first by default; created_before selects the stuck ones."""
        return self._backend.list_records(
            status=TransferStatus.PENDING,
            created_before=created_before,
            limit=limit,
            oldest_first=oldest_first,
        )

    def prune(self, before_ts: int) -> int:
        """Delete confirmed and failed records created before before_ts. Pending records are kept."""
        deleted = self._backend.delete_before(before_ts)
        logger.info("transfer_log_pruned", before_ts=before_ts, deleted=deleted)
        return deleted


def get_transfer_log(path: str | Path | None = None) -> TransferLog:
    """
    Return a TransferLog backed by SQLite with the schema ensured.

    path: SQLite file (e.g. "data/transfer_guard.db"). Default: "transfer_guard.db" in cwd.
    """
    if path is None:
        path = Path("transfer_guard.db")
    log = TransferLog(SQLiteBackend(path))
    log.ensure_schema()
    return log


def get_memory_log() -> TransferLog:
    """Return a TransferLog that lives only in this process."""
    return TransferLog(InMemoryBackend())
