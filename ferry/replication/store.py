"""SQLite-backed store for replication queue and audit records.

Each write is its own transaction. Nothing here spans the queue insert,
the queue update and the audit insert; the orchestrator composes them and
handles each failure separately.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from ferry.schemas.replication import AuditRecord, QueueRecord, ReplicationStatus

logger = logging.getLogger(__name__)

_CREATE_QUEUE_TABLE = """
CREATE TABLE IF NOT EXISTS replication_queue (
    queue_id                INTEGER PRIMARY KEY AUTOINCREMENT,
    file_name               TEXT NOT NULL,
    file_size               INTEGER NOT NULL,
    source_region           TEXT NOT NULL,
    target_region           TEXT NOT NULL,
    status                  TEXT NOT NULL,
    upload_time             TEXT NOT NULL,
    replication_start_time  TEXT,
    replication_end_time    TEXT,
    created_date            TEXT NOT NULL,
    modified_date           TEXT NOT NULL
)
"""

_CREATE_AUDIT_TABLE = """
CREATE TABLE IF NOT EXISTS replication_audit (
    audit_id                INTEGER PRIMARY KEY AUTOINCREMENT,
    file_name               TEXT NOT NULL,
    file_size               INTEGER NOT NULL,
    status                  TEXT NOT NULL,
    source_region           TEXT NOT NULL,
    target_region           TEXT NOT NULL,
    upload_time             TEXT NOT NULL,
    replication_time        TEXT NOT NULL,
    replication_duration_ms INTEGER NOT NULL,
    error_message           TEXT,
    created_date            TEXT NOT NULL
)
"""

_INSERT_QUEUE = """
INSERT INTO replication_queue
    (file_name, file_size, source_region, target_region, status, upload_time,
     created_date, modified_date)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_QUEUE = """
UPDATE replication_queue
SET status = ?, replication_start_time = ?, replication_end_time = ?, modified_date = ?
WHERE queue_id = ?
"""

_INSERT_AUDIT = """
INSERT INTO replication_audit
    (file_name, file_size, status, source_region, target_region, upload_time,
     replication_time, replication_duration_ms, error_message, created_date)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_QUEUE_BY_ID = "SELECT * FROM replication_queue WHERE queue_id = ?"


class StoreError(Exception):
    """Raised when a store read or write fails."""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _sortable(value: datetime) -> str:
    """Fixed-width UTC text so SQL string comparison follows time order."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_queue_record(row: sqlite3.Row) -> QueueRecord:
    return QueueRecord(
        queue_id=row["queue_id"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        source_region=row["source_region"],
        target_region=row["target_region"],
        status=ReplicationStatus(row["status"]),
        upload_time=datetime.fromisoformat(row["upload_time"]),
        replication_start_time=_parse(row["replication_start_time"]),
        replication_end_time=_parse(row["replication_end_time"]),
        created_date=datetime.fromisoformat(row["created_date"]),
        modified_date=datetime.fromisoformat(row["modified_date"]),
    )


def _row_to_audit_record(row: sqlite3.Row) -> AuditRecord:
    return AuditRecord(
        audit_id=row["audit_id"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        status=ReplicationStatus(row["status"]),
        source_region=row["source_region"],
        target_region=row["target_region"],
        upload_time=datetime.fromisoformat(row["upload_time"]),
        replication_time=datetime.fromisoformat(row["replication_time"]),
        replication_duration_ms=row["replication_duration_ms"],
        error_message=row["error_message"],
        created_date=_parse(row["created_date"]),
    )


class ReplicationStore:
    """Durable store for the replication queue and the audit trail.

    Usage::

        with ReplicationStore("/path/to/replication.db") as store:
            queue_id = store.insert_queue_record(
                file_name="a.txt", file_size=500,
                source_region="EastUS2", target_region="CentralUS",
                upload_time=created,
            )
            store.update_queue_record(queue_id, ReplicationStatus.COMPLETED, start, end)
            store.insert_audit_record(audit)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_QUEUE_TABLE)
        self._conn.execute(_CREATE_AUDIT_TABLE)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "ReplicationStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_queue_record(
        self,
        *,
        file_name: str,
        file_size: int,
        source_region: str,
        target_region: str,
        upload_time: datetime,
        status: ReplicationStatus = ReplicationStatus.PENDING,
    ) -> int:
        """Insert a queue record and return its store-assigned queue_id.

        Raises:
            StoreError: On connectivity or constraint failure.
        """
        now = datetime.now(UTC).isoformat()
        cursor = self._write(
            _INSERT_QUEUE,
            (
                file_name,
                file_size,
                source_region,
                target_region,
                status.value,
                upload_time.isoformat(),
                now,
                now,
            ),
        )
        queue_id = cursor.lastrowid
        logger.debug("Inserted queue record: queue_id=%d file=%s", queue_id, file_name)
        return queue_id

    def update_queue_record(
        self,
        queue_id: int,
        status: ReplicationStatus,
        start_time: datetime | None,
        end_time: datetime | None,
    ) -> None:
        """Move a queue record to a new status and stamp the replication window.

        Raises:
            StoreError: On write failure, or if no record has this queue_id.
        """
        cursor = self._write(
            _UPDATE_QUEUE,
            (
                status.value,
                _iso(start_time),
                _iso(end_time),
                datetime.now(UTC).isoformat(),
                queue_id,
            ),
        )
        if cursor.rowcount == 0:
            raise StoreError(f"Queue record not found: {queue_id}")
        logger.debug("Updated queue record: queue_id=%d status=%s", queue_id, status.value)

    def insert_audit_record(self, record: AuditRecord) -> int:
        """Append an audit record. Returns its audit_id.

        Raises:
            StoreError: On write failure.
        """
        cursor = self._write(
            _INSERT_AUDIT,
            (
                record.file_name,
                record.file_size,
                record.status.value,
                record.source_region,
                record.target_region,
                record.upload_time.isoformat(),
                _sortable(record.replication_time),
                record.replication_duration_ms,
                record.error_message,
                datetime.now(UTC).isoformat(),
            ),
        )
        logger.debug(
            "Inserted audit record: file=%s status=%s", record.file_name, record.status.value
        )
        return cursor.lastrowid

    def _write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        except (sqlite3.Error, UnicodeEncodeError) as exc:
            # UnicodeEncodeError: names carrying undecodable bytes (surrogate escapes)
            try:
                self._conn.rollback()
            except sqlite3.Error:
                logger.debug("Rollback failed after store error", exc_info=True)
            raise StoreError(f"Store write failed: {exc}") from exc
        return cursor

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_queue_record(self, queue_id: int) -> QueueRecord | None:
        """Fetch a single queue record, or None if not found."""
        row = self._read(_SELECT_QUEUE_BY_ID, (queue_id,)).fetchone()
        if row is None:
            return None
        return _row_to_queue_record(row)

    def list_queue(
        self, *, status: ReplicationStatus | None = None, limit: int = 50
    ) -> list[QueueRecord]:
        """List queue records, newest first."""
        if status is None:
            rows = self._read(
                "SELECT * FROM replication_queue ORDER BY queue_id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._read(
                "SELECT * FROM replication_queue WHERE status = ? ORDER BY queue_id DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        return [_row_to_queue_record(r) for r in rows]

    def count_by_status(self) -> dict[ReplicationStatus, int]:
        """Return the number of queue records in each status."""
        counts = {s: 0 for s in ReplicationStatus}
        rows = self._read(
            "SELECT status, COUNT(*) FROM replication_queue GROUP BY status", ()
        ).fetchall()
        for row in rows:
            counts[ReplicationStatus(row[0])] = row[1]
        return counts

    def read_audit(
        self,
        *,
        since: datetime | None = None,
        status: ReplicationStatus | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        """Read audit records with optional filtering.

        Args:
            since: Only return records whose replication_time is after this timestamp.
            status: Only return records with this terminal status.
            limit: Maximum number of records to return (newest after filtering).

        Returns:
            List of AuditRecord objects, oldest first.
        """
        clauses: list[str] = []
        params: list = []
        if since is not None:
            clauses.append("replication_time > ?")
            params.append(_sortable(since))
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)

        sql = "SELECT * FROM replication_audit"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY audit_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = self._read(sql, tuple(params)).fetchall()
        return [_row_to_audit_record(r) for r in reversed(rows)]

    def _read(self, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except (sqlite3.Error, UnicodeEncodeError) as exc:
            raise StoreError(f"Store read failed: {exc}") from exc
