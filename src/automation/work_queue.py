"""
Durable work queue for publish jobs.

The external publish worker consumes jobs keyed by draft id. The core only
needs a narrow contract from the queue:
- enqueue(job_key, name, payload, deliver_at)
- get_job(job_key) -> QueueJob | None  (state + attempts_made)
- QueueJob.remove()

SqliteWorkQueue is the bundled implementation. It keeps its own database
file so an enqueue can run while the record store's scheduling transaction
is still open. Worker-side transitions (mark_active / mark_completed /
mark_failed) exist for the external publisher and for tests.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Protocol

from .entities import from_iso, to_iso, utc_now
from .errors import QueueError


logger = logging.getLogger(__name__)


PUBLISH_JOB_NAME = "publish-draft"


class JobState(str, Enum):
    """Lifecycle states of a queue job as observed by the core."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# A job in one of these states is still going to run
PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


def job_key_for_draft(draft_id: str) -> str:
    """Queue job key for a draft's publish job."""
    return f"draft-{draft_id}"


@dataclass
class QueueJob:
    """Snapshot of a queue job."""

    job_key: str
    name: str
    payload: dict[str, Any]
    state: JobState
    attempts_made: int = 0
    deliver_at: Optional[datetime] = None
    _remove: Optional[Callable[[str], bool]] = field(default=None, repr=False, compare=False)

    def remove(self) -> bool:
        """Remove this job from its queue."""
        if self._remove is None:
            raise QueueError(self.job_key, "job is detached from its queue")
        return self._remove(self.job_key)


class WorkQueue(Protocol):
    """Protocol for the durable work queue consumed by the core."""

    def enqueue(
        self,
        job_key: str,
        name: str,
        payload: dict[str, Any],
        deliver_at: datetime,
    ) -> QueueJob:
        """
        Add a job delivered no earlier than `deliver_at`.

        Raises:
            QueueError: If the job cannot be stored
        """
        ...

    def get_job(self, job_key: str) -> Optional[QueueJob]:
        """Get a job by key, or None if the queue has no such job."""
        ...


class SqliteWorkQueue:
    """
    SQLite-backed WorkQueue.

    A DELAYED job whose deliver_at has passed is reported as WAITING.
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the queue.

        Args:
            db_path: Path to the queue's SQLite database file
            clock: Source of "now" for delayed/waiting classification
        """
        self.db_path = str(db_path)
        self.clock = clock
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS queue_jobs (
                    job_key TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    state TEXT NOT NULL,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    deliver_at TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_jobs_due
                ON queue_jobs (state, deliver_at)
            """)

    def _row_to_job(self, row: sqlite3.Row) -> QueueJob:
        """Convert a database row to a QueueJob."""
        state = JobState(row["state"])
        deliver_at = from_iso(row["deliver_at"])
        if state == JobState.DELAYED and deliver_at <= self.clock():
            state = JobState.WAITING

        return QueueJob(
            job_key=row["job_key"],
            name=row["name"],
            payload=json.loads(row["payload"]),
            state=state,
            attempts_made=row["attempts_made"],
            deliver_at=deliver_at,
            _remove=self.remove,
        )

    # =========================================================================
    # Producer Side
    # =========================================================================

    def enqueue(
        self,
        job_key: str,
        name: str,
        payload: dict[str, Any],
        deliver_at: datetime,
    ) -> QueueJob:
        """
        Add a job delivered no earlier than `deliver_at`.

        Raises:
            QueueError: If a job with this key already exists
        """
        now = self.clock()
        state = JobState.DELAYED if deliver_at > now else JobState.WAITING

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO queue_jobs
                    (job_key, name, payload, state, attempts_made, deliver_at,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        job_key,
                        name,
                        json.dumps(payload),
                        state.value,
                        to_iso(deliver_at),
                        to_iso(now),
                        to_iso(now),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise QueueError(job_key, "job already exists") from e
        except sqlite3.Error as e:
            raise QueueError(job_key, str(e)) from e

        logger.debug(f"Enqueued {name} job {job_key} for {to_iso(deliver_at)}")
        return self.get_job(job_key)

    def get_job(self, job_key: str) -> Optional[QueueJob]:
        """Get a job by key, or None if the queue has no such job."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM queue_jobs WHERE job_key = ?",
                (job_key,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def remove(self, job_key: str) -> bool:
        """
        Remove a job.

        Returns:
            True if a job was removed
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM queue_jobs WHERE job_key = ?",
                (job_key,),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Worker Side
    # =========================================================================

    def fetch_due(self, limit: int = 10) -> list[QueueJob]:
        """List waiting/delayed jobs whose delivery time has come."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM queue_jobs
                WHERE state IN (?, ?) AND deliver_at <= ?
                ORDER BY deliver_at ASC
                LIMIT ?
                """,
                (
                    JobState.WAITING.value,
                    JobState.DELAYED.value,
                    to_iso(self.clock()),
                    limit,
                ),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def _transition(
        self,
        job_key: str,
        state: JobState,
        count_attempt: bool = False,
        last_error: Optional[str] = None,
    ) -> QueueJob:
        """Move a job to `state`."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE queue_jobs
                SET state = ?,
                    attempts_made = attempts_made + ?,
                    last_error = COALESCE(?, last_error),
                    updated_at = ?
                WHERE job_key = ?
                """,
                (
                    state.value,
                    1 if count_attempt else 0,
                    last_error,
                    to_iso(self.clock()),
                    job_key,
                ),
            )
            if cursor.rowcount == 0:
                raise QueueError(job_key, "job not found")

        return self.get_job(job_key)

    def mark_active(self, job_key: str) -> QueueJob:
        """Worker picked up the job. Counts one attempt."""
        return self._transition(job_key, JobState.ACTIVE, count_attempt=True)

    def mark_completed(self, job_key: str) -> QueueJob:
        """Worker finished the job."""
        return self._transition(job_key, JobState.COMPLETED)

    def mark_failed(self, job_key: str, error: str) -> QueueJob:
        """Worker gave up on the job."""
        return self._transition(job_key, JobState.FAILED, last_error=error)

    def mark_retry(self, job_key: str, deliver_at: datetime) -> QueueJob:
        """Worker attempt failed; deliver again at `deliver_at`."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE queue_jobs SET state = ?, deliver_at = ?, updated_at = ?
                WHERE job_key = ?
                """,
                (
                    JobState.DELAYED.value,
                    to_iso(deliver_at),
                    to_iso(self.clock()),
                    job_key,
                ),
            )
            if cursor.rowcount == 0:
                raise QueueError(job_key, "job not found")

        return self.get_job(job_key)


def build_publish_payload(draft_id: str, user_id: str, upload_mode: str) -> dict[str, Any]:
    """Payload the publish worker expects."""
    return {
        "draft_id": draft_id,
        "user_id": user_id,
        "upload_mode": upload_mode,
    }


def schedule_publish(
    queue: WorkQueue,
    draft_id: str,
    user_id: str,
    upload_mode: str,
    deliver_at: datetime,
) -> bool:
    """
    Enqueue a draft's publish job, de-duplicating by job key.

    - Existing waiting/delayed/active job: left alone
    - Existing completed/failed job: removed, then re-added

    Returns:
        True if a new job was enqueued, False if a pending one already existed

    Raises:
        QueueError: If the queue rejects the job
    """
    job_key = job_key_for_draft(draft_id)

    existing = queue.get_job(job_key)
    if existing is not None:
        if existing.state in PENDING_STATES:
            logger.info(
                f"Publish job {job_key} already {existing.state.value}, skipping enqueue"
            )
            return False
        logger.info(f"Removing {existing.state.value} publish job {job_key} before re-adding")
        existing.remove()

    queue.enqueue(
        job_key,
        PUBLISH_JOB_NAME,
        build_publish_payload(draft_id, user_id, upload_mode),
        deliver_at,
    )
    logger.info(f"Scheduled publish job {job_key} for {to_iso(deliver_at)}")
    return True
