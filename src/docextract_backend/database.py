"""
SQLite job store for extraction jobs and their extraction records.

This module is the only place that touches persistent state. Every other
component reaches it through the narrow query/command surface of
JobDatabase:

- read-by-id (optionally constrained by status)
- conditional status transitions (compare-and-swap on the current status)
- upsert of extraction records keyed on the job id
- counting by status and creation date
- the retry and cleanup procedures

All sqlite3 errors are re-raised as StoreError so callers never depend on
the storage driver.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from .errors import StoreError
from .models import JobStatus
from .utils import deserialize_datetime, ensure_directory, serialize_datetime, utcnow


# Default database path
DEFAULT_DB_PATH = Path("data/extraction.db")

# Columns that may be written through update_job/transition_job keyword arguments
_UPDATABLE_COLUMNS = {
    "started_at",
    "completed_at",
    "error_message",
    "retry_count",
    "max_retries",
    "metadata",
}

_DATETIME_COLUMNS = {"created_at", "updated_at", "started_at", "completed_at", "processed_at"}

StatusArg = Union[JobStatus, str, Iterable[Union[JobStatus, str]]]


def _status_values(status: StatusArg) -> List[str]:
    if isinstance(status, (JobStatus, str)):
        status = [status]
    return [JobStatus(value).value for value in status]


def _encode(column: str, value: Any) -> Any:
    if column in _DATETIME_COLUMNS:
        return serialize_datetime(value)
    if column == "metadata":
        return json.dumps(value or {})
    if isinstance(value, JobStatus):
        return value.value
    return value


class JobDatabase:
    """
    SQLite database for extraction jobs.

    Thread-safe: each call opens its own connection and SQLite serialises
    writers (WAL mode). Status changes are guarded by the expected current
    status in the WHERE clause, so two callers racing on the same row cannot
    both win a transition.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open job store: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS extraction_jobs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'queued',
                    carter_id TEXT,
                    user_id TEXT,
                    document_type TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    mime_type TEXT NOT NULL,
                    metadata TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    error_message TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS document_extractions (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL UNIQUE
                        REFERENCES extraction_jobs(id) ON DELETE CASCADE,
                    carter_id TEXT,
                    document_type TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    extraction_status TEXT NOT NULL,
                    ocr_text TEXT,
                    extracted_data TEXT,
                    confidence_score REAL,
                    fields_found TEXT,
                    fields_missing TEXT,
                    processing_time_ms INTEGER,
                    errors TEXT,
                    processed_at TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_extraction_jobs_status
                ON extraction_jobs(status)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_extraction_jobs_created_at
                ON extraction_jobs(created_at DESC)
            """)

    # Jobs

    def create_job(
        self,
        *,
        document_type: str,
        file_path: str,
        file_size: int,
        mime_type: str,
        carter_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        max_retries: int = 3,
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Insert a new job in the queued state.

        Returns:
            The stored job as a dictionary
        """
        job_id = job_id or uuid4().hex
        created_at = created_at or utcnow()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO extraction_jobs (
                    id, status, carter_id, user_id, document_type, file_path,
                    file_size, mime_type, metadata, retry_count, max_retries,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            """, (
                job_id,
                JobStatus.QUEUED.value,
                carter_id,
                user_id,
                str(getattr(document_type, "value", document_type)),
                file_path,
                file_size,
                mime_type,
                json.dumps(metadata or {}),
                max_retries,
                serialize_datetime(created_at),
                serialize_datetime(created_at),
            ))
            row = conn.execute("SELECT * FROM extraction_jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Returns:
            Job data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM extraction_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return self._row_to_job(row) if row else None

    def get_job_with_status(self, job_id: str, status: StatusArg) -> Optional[Dict[str, Any]]:
        """Retrieve a job only if it currently has one of the given statuses."""
        values = _status_values(status)
        placeholders = ", ".join("?" for _ in values)
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT * FROM extraction_jobs WHERE id = ? AND status IN ({placeholders})",
                (job_id, *values),
            ).fetchone()
            return self._row_to_job(row) if row else None

    def _build_update(self, fields: Dict[str, Any]) -> tuple:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns cannot be updated: {', '.join(sorted(unknown))}")
        updates = ["updated_at = ?"]
        values: List[Any] = [serialize_datetime(utcnow())]
        for column, value in fields.items():
            updates.append(f"{column} = ?")
            values.append(_encode(column, value))
        return updates, values

    def transition_job(
        self,
        job_id: str,
        expected: StatusArg,
        new_status: Union[JobStatus, str],
        **fields: Any,
    ) -> bool:
        """
        Move a job to new_status only if its current status is expected.

        Args:
            job_id: The job ID
            expected: Status (or statuses) the row must currently have
            new_status: Status to write
            **fields: Extra columns to write in the same statement

        Returns:
            True if the row was updated, False if it was missing or had
            another status
        """
        updates, values = self._build_update(fields)
        updates.insert(0, "status = ?")
        values.insert(0, JobStatus(new_status).value)
        expected_values = _status_values(expected)
        placeholders = ", ".join("?" for _ in expected_values)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE extraction_jobs SET {', '.join(updates)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                (*values, job_id, *expected_values),
            )
            return cursor.rowcount > 0

    def update_job(self, job_id: str, **fields: Any) -> bool:
        """Unconditionally update non-status columns of a job."""
        updates, values = self._build_update(fields)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE extraction_jobs SET {', '.join(updates)} WHERE id = ?",
                (*values, job_id),
            )
            return cursor.rowcount > 0

    def claim_next_job(self) -> Optional[Dict[str, Any]]:
        """
        Atomically move the oldest queued job to processing.

        Returns:
            The claimed job (already in processing state) or None if the
            queue is empty
        """
        now = serialize_datetime(utcnow())
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT id FROM extraction_jobs WHERE status = ? ORDER BY created_at ASC LIMIT 1",
                (JobStatus.QUEUED.value,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "UPDATE extraction_jobs SET status = ?, started_at = ?, updated_at = ? WHERE id = ?",
                (JobStatus.PROCESSING.value, now, now, row["id"]),
            )
            claimed = conn.execute("SELECT * FROM extraction_jobs WHERE id = ?", (row["id"],)).fetchone()
            return self._row_to_job(claimed)

    def count_jobs(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        created_since: Optional[datetime] = None,
    ) -> int:
        """Count jobs, optionally filtered by status and/or creation time (inclusive)."""
        clauses = []
        values: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            values.append(JobStatus(status).value)
        if created_since is not None:
            clauses.append("created_at >= ?")
            values.append(serialize_datetime(created_since))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM extraction_jobs{where}", values).fetchone()
            return int(row["total"])

    def list_retryable_jobs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Failed jobs whose own retry_count is still below their own max_retries.
        """
        query = (
            "SELECT * FROM extraction_jobs "
            "WHERE status = ? AND retry_count < max_retries "
            "ORDER BY created_at ASC"
        )
        values: List[Any] = [JobStatus.FAILED.value]
        if limit is not None:
            query += " LIMIT ?"
            values.append(limit)
        with self._get_connection() as conn:
            rows = conn.execute(query, values).fetchall()
            return [self._row_to_job(row) for row in rows]

    def retry_failed_job(self, job_id: str) -> bool:
        """
        Reset a failed job for another attempt.

        The job must be failed and below its own retry limit. On success the
        job is queued again with retry_count incremented and its error and
        timing columns cleared.

        Returns:
            True if the job was re-queued, False otherwise
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE extraction_jobs
                SET status = ?,
                    retry_count = retry_count + 1,
                    error_message = NULL,
                    started_at = NULL,
                    completed_at = NULL,
                    updated_at = ?
                WHERE id = ? AND status = ? AND retry_count < max_retries
            """, (
                JobStatus.QUEUED.value,
                serialize_datetime(utcnow()),
                job_id,
                JobStatus.FAILED.value,
            ))
            return cursor.rowcount > 0

    def reset_stuck_jobs(self, cutoff: datetime) -> int:
        """Return processing jobs not updated since cutoff to the queue."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE extraction_jobs SET status = ?, updated_at = ? "
                "WHERE status = ? AND updated_at < ?",
                (
                    JobStatus.QUEUED.value,
                    serialize_datetime(utcnow()),
                    JobStatus.PROCESSING.value,
                    serialize_datetime(cutoff),
                ),
            )
            return cursor.rowcount

    def delete_failed_jobs(self, completed_before: datetime) -> int:
        """Delete failed jobs completed before the cutoff (their extraction records cascade)."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM extraction_jobs WHERE status = ? AND completed_at < ?",
                (JobStatus.FAILED.value, serialize_datetime(completed_before)),
            )
            return cursor.rowcount

    def cleanup_old_jobs(self, older_than_days: int = 30) -> int:
        """
        Delete finished (completed or failed) jobs older than the given age.

        Returns:
            Number of deleted jobs
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM extraction_jobs WHERE status IN (?, ?) AND completed_at < ?",
                (JobStatus.COMPLETED.value, JobStatus.FAILED.value, serialize_datetime(cutoff)),
            )
            return cursor.rowcount

    def list_recent_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """List jobs ordered by creation time (newest first)."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM extraction_jobs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    # Extraction records

    def upsert_extraction(self, record: Dict[str, Any]) -> None:
        """
        Insert or replace the extraction record of a job.

        At most one record exists per job_id; a second upsert overwrites the
        first one in place.
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO document_extractions (
                    id, job_id, carter_id, document_type, file_path,
                    extraction_status, ocr_text, extracted_data, confidence_score,
                    fields_found, fields_missing, processing_time_ms, errors, processed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    carter_id = excluded.carter_id,
                    document_type = excluded.document_type,
                    file_path = excluded.file_path,
                    extraction_status = excluded.extraction_status,
                    ocr_text = excluded.ocr_text,
                    extracted_data = excluded.extracted_data,
                    confidence_score = excluded.confidence_score,
                    fields_found = excluded.fields_found,
                    fields_missing = excluded.fields_missing,
                    processing_time_ms = excluded.processing_time_ms,
                    errors = excluded.errors,
                    processed_at = excluded.processed_at
            """, (
                uuid4().hex,
                record["job_id"],
                record.get("carter_id"),
                str(getattr(record["document_type"], "value", record["document_type"])),
                record["file_path"],
                record.get("extraction_status", "completed"),
                record.get("ocr_text"),
                json.dumps(record.get("extracted_data") or {}),
                record.get("confidence_score"),
                json.dumps(record.get("fields_found") or []),
                json.dumps(record.get("fields_missing") or []),
                record.get("processing_time_ms"),
                json.dumps(record.get("errors") or []),
                serialize_datetime(record.get("processed_at") or utcnow()),
            ))

    def get_extraction(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Retrieve the extraction record of a job, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM document_extractions WHERE job_id = ?", (job_id,)
            ).fetchone()
            return self._row_to_extraction(row) if row else None

    def count_extractions(self, job_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM document_extractions WHERE job_id = ?", (job_id,)
            ).fetchone()
            return int(row["total"])

    def recent_processing_times(self, since: datetime, limit: int = 100) -> List[int]:
        """Positive processing times of extraction records processed since the cutoff."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT processing_time_ms FROM document_extractions "
                "WHERE processing_time_ms IS NOT NULL AND processing_time_ms > 0 "
                "AND processed_at >= ? ORDER BY processed_at DESC LIMIT ?",
                (serialize_datetime(since), limit),
            ).fetchall()
            return [int(row["processing_time_ms"]) for row in rows]

    def _row_to_job(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        return {
            "id": row["id"],
            "status": row["status"],
            "carter_id": row["carter_id"],
            "user_id": row["user_id"],
            "document_type": row["document_type"],
            "file_path": row["file_path"],
            "file_size": row["file_size"],
            "mime_type": row["mime_type"],
            "metadata": json.loads(row["metadata"] or "{}"),
            "retry_count": row["retry_count"],
            "max_retries": row["max_retries"],
            "created_at": deserialize_datetime(row["created_at"]),
            "updated_at": deserialize_datetime(row["updated_at"]),
            "started_at": deserialize_datetime(row["started_at"]),
            "completed_at": deserialize_datetime(row["completed_at"]),
            "error_message": row["error_message"],
        }

    def _row_to_extraction(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to an extraction record dictionary."""
        return {
            "job_id": row["job_id"],
            "carter_id": row["carter_id"],
            "document_type": row["document_type"],
            "file_path": row["file_path"],
            "extraction_status": row["extraction_status"],
            "ocr_text": row["ocr_text"],
            "extracted_data": json.loads(row["extracted_data"] or "{}"),
            "confidence_score": row["confidence_score"],
            "fields_found": json.loads(row["fields_found"] or "[]"),
            "fields_missing": json.loads(row["fields_missing"] or "[]"),
            "processing_time_ms": row["processing_time_ms"],
            "errors": json.loads(row["errors"] or "[]"),
            "processed_at": deserialize_datetime(row["processed_at"]),
        }
