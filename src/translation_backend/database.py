"""
SQLite status store for translation jobs.

Records are created by the API in the ``queued`` state, mutated only by the
worker and never deleted. Status changes are conditional updates executed in
an immediate transaction, so two workers racing on a redelivered message
cannot both move the same job out of ``queued``.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .errors import DuplicateJobError, InvalidTransitionError, JobNotFoundError
from .models import JobStatus, TranslationJob, can_transition
from .utils import ensure_directory

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/translations.db")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: datetime) -> str:
    """Serialize datetime to ISO format string."""
    return dt.isoformat()


def _deserialize_datetime(s: str) -> datetime:
    """Deserialize ISO format string to datetime."""
    return datetime.fromisoformat(s)


class TranslationDatabase:
    """
    SQLite database for translation job records.

    Thread-safe: every operation opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        """Run statements in a write transaction taken up front."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS translations (
                    request_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    original_text TEXT NOT NULL,
                    target_language TEXT NOT NULL,
                    translated_text TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_translations_status
                ON translations(status, created_at)
            """)

    def create(self, job: TranslationJob) -> None:
        """
        Insert a new job record.

        Args:
            job: The record to insert

        Raises:
            DuplicateJobError: If a record with the same request id exists
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO translations (
                        request_id, status, original_text, target_language,
                        translated_text, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.request_id,
                        job.status.value,
                        job.original_text,
                        job.target_language,
                        job.translated_text,
                        _serialize_datetime(job.created_at),
                        _serialize_datetime(job.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateJobError(job.request_id) from exc

    def get(self, request_id: str) -> Optional[TranslationJob]:
        """
        Retrieve a job by request id.

        Returns:
            The record, or None if it does not exist
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM translations WHERE request_id = ?", (request_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_job(row)

    def update(
        self,
        request_id: str,
        status: JobStatus,
        translated_text: Optional[str] = None,
        expected_status: Optional[JobStatus] = None,
    ) -> bool:
        """
        Move a job to a new status and refresh updated_at.

        The read and the write happen in one immediate transaction, so
        ``expected_status`` works as a compare-and-swap guard.

        Args:
            request_id: The job to update
            status: New status value
            translated_text: Result text, required when (and only when) status is completed
            expected_status: Apply the update only if the job currently has this status

        Returns:
            True if the update was applied, False if the current status did not match expected_status

        Raises:
            JobNotFoundError: If the record does not exist
            InvalidTransitionError: If the move is not allowed by the lifecycle
        """
        if (status == JobStatus.COMPLETED) != (translated_text is not None):
            raise InvalidTransitionError(
                "translated_text must be set exactly when a job is completed"
            )

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status FROM translations WHERE request_id = ?", (request_id,)
            ).fetchone()
            if not row:
                raise JobNotFoundError(request_id)

            current = JobStatus(row["status"])
            if expected_status is not None and current != expected_status:
                logger.info(
                    f"Skipped update of {request_id} to {status.value}: "
                    f"expected {expected_status.value}, found {current.value}"
                )
                return False

            if not can_transition(current, status):
                raise InvalidTransitionError(
                    f"Cannot move {request_id} from {current.value} to {status.value}"
                )

            conn.execute(
                """
                UPDATE translations
                SET status = ?, translated_text = ?, updated_at = ?
                WHERE request_id = ?
                """,
                (status.value, translated_text, _serialize_datetime(utcnow()), request_id),
            )
            return True

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[TranslationJob]:
        """
        List jobs ordered by creation time (newest first).

        Args:
            status: Only return jobs in this status
            limit: Maximum number of records

        Returns:
            List of job records
        """
        with self._get_connection() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM translations ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM translations WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status.value, limit),
                ).fetchall()

            return [self._row_to_job(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        """Return the number of jobs per status, with zero for empty states."""
        counts = {status.value: 0 for status in JobStatus}
        with self._get_connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS total FROM translations GROUP BY status"):
                counts[row["status"]] = row["total"]
        return counts

    def _row_to_job(self, row: sqlite3.Row) -> TranslationJob:
        """Convert a database row to a job record."""
        return TranslationJob(
            request_id=row["request_id"],
            status=JobStatus(row["status"]),
            original_text=row["original_text"],
            target_language=row["target_language"],
            translated_text=row["translated_text"],
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
        )
