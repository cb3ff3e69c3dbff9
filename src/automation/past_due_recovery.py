"""
Past-Due Recovery sweep.

Finds SCHEDULED drafts whose publish time passed more than two minutes ago
and cross-checks the work queue. A scheduled draft with no live queue job
was lost (enqueue failure, queue data loss, worker crash) and is
re-enqueued; a queue job that disagrees with the DB is replaced.

Decision table per draft (job key draft-<id>):
- no job                         -> re-enqueue
- completed / failed             -> remove stale job, re-enqueue
- waiting / delayed, attempts>=2 -> remove (burned attempts), re-enqueue
- active, attempts>=4            -> leave alone, monitoring signal
- anything else                  -> leave alone
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from src.infra.alerting import AlertManager, SignalKind

from .entities import Draft, UploadMode, utc_now
from .error_categorizer import ErrorCategorizer
from .persistence import PersistenceAdapter
from .work_queue import JobState, WorkQueue, job_key_for_draft, schedule_publish


logger = logging.getLogger(__name__)


GRACE_PERIOD = timedelta(minutes=2)
LOCK_STALE_AFTER = timedelta(minutes=10)
BATCH_SIZE = 100
MAX_RETRY_COUNT = 7
RETRY_DELAY = timedelta(minutes=1)

BURNED_ATTEMPTS_THRESHOLD = 2
ACTIVE_ATTEMPTS_WARNING_THRESHOLD = 4

HIGH_RECOVERY_COUNT = 10
HIGH_FAILURE_RATE = 0.1

RECOVERED_MESSAGE = "Scheduled job was lost and has been automatically recovered"


class PastDueRecovery:
    """Re-enqueues scheduled drafts the work queue lost track of."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        queue: WorkQueue,
        alerts: Optional[AlertManager] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize PastDueRecovery.

        Args:
            persistence: PersistenceAdapter for storage
            queue: Work queue to cross-check and re-enqueue into
            alerts: Signal destination
            clock: Source of "now"
        """
        self.persistence = persistence
        self.queue = queue
        self.alerts = alerts or AlertManager()
        self.clock = clock
        self.categorizer = ErrorCategorizer(clock=clock)

    def run_once(self) -> dict:
        """
        Run one recovery sweep.

        Returns:
            Recovery statistics
        """
        stats = {
            "found": 0,
            "recovered": 0,
            "already_queued": 0,
            "failed": 0,
        }

        now = self.clock()
        try:
            past_due = self.persistence.find_past_due_drafts(
                due_before=now - GRACE_PERIOD,
                lock_stale_before=now - LOCK_STALE_AFTER,
                max_retry_count=MAX_RETRY_COUNT,
                limit=BATCH_SIZE,
            )
        except Exception as e:
            logger.error(f"[PastDueRecovery] Critical error querying past due drafts: {e}", exc_info=True)
            return stats

        stats["found"] = len(past_due)
        if not past_due:
            logger.info("[PastDueRecovery] No past due drafts found")
            return stats

        logger.info(
            f"[PastDueRecovery] Found {len(past_due)} past due draft(s), checking queue status..."
        )

        for draft in past_due:
            try:
                if self.recover_draft(draft):
                    stats["recovered"] += 1
                else:
                    stats["already_queued"] += 1
            except Exception as e:
                stats["failed"] += 1
                self._record_failure(draft, e)

        logger.info(
            f"[PastDueRecovery] Recovery complete: {stats['recovered']} recovered, "
            f"{stats['already_queued']} already queued, {stats['failed']} failed"
        )

        total = len(past_due)
        if stats["recovered"] > HIGH_RECOVERY_COUNT:
            self.alerts.warning(
                SignalKind.HIGH_RECOVERY_RATE,
                "High past-due recovery rate",
                f"{stats['recovered']}/{total} scheduled drafts had to be re-enqueued "
                f"({round(stats['recovered'] / total * 100)}%), indicating a systemic issue",
                recovered=stats["recovered"],
                total=total,
            )

        if stats["failed"] > 0 and stats["failed"] / total > HIGH_FAILURE_RATE:
            self.alerts.warning(
                SignalKind.HIGH_FAILURE_RATE,
                "High past-due recovery failure rate",
                f"{stats['failed']}/{total} past due drafts could not be recovered "
                f"({round(stats['failed'] / total * 100)}%)",
                failed=stats["failed"],
                total=total,
            )

        return stats

    def recover_draft(self, draft: Draft) -> bool:
        """
        Cross-check one past due draft against the queue.

        Returns:
            True if the draft was re-enqueued, False if left alone
        """
        job_key = job_key_for_draft(draft.draft_id)
        job = self.queue.get_job(job_key)

        if job is None:
            self._requeue(draft)
            logger.info(f"[PastDueRecovery] Re-queued draft {draft.draft_id} (no job found)")
            return True

        if job.state in (JobState.COMPLETED, JobState.FAILED):
            job.remove()
            self._requeue(draft)
            logger.info(
                f"[PastDueRecovery] Re-queued draft {draft.draft_id} "
                f"(old job state: {job.state.value})"
            )
            return True

        if (
            job.state in (JobState.WAITING, JobState.DELAYED)
            and job.attempts_made >= BURNED_ATTEMPTS_THRESHOLD
        ):
            job.remove()
            self._requeue(draft)
            logger.info(
                f"[PastDueRecovery] Reset job with {job.attempts_made} burned attempts "
                f"(state: {job.state.value}) for draft {draft.draft_id}"
            )
            return True

        if job.state == JobState.ACTIVE and job.attempts_made >= ACTIVE_ATTEMPTS_WARNING_THRESHOLD:
            self.alerts.warning(
                SignalKind.JOB_MONITORING,
                "Long-running publish job",
                f"Job {job_key} is active with {job.attempts_made} attempts, monitoring",
                draft_id=draft.draft_id,
                attempts_made=job.attempts_made,
            )
            return False

        logger.info(
            f"[PastDueRecovery] Draft {draft.draft_id} already in queue "
            f"(state: {job.state.value}, attempts: {job.attempts_made}), skipping"
        )
        return False

    def _requeue(self, draft: Draft) -> None:
        now = self.clock()
        self.persistence.update_draft(
            draft.draft_id,
            updated_at=now,
            retry_count=0,
            error_message=RECOVERED_MESSAGE,
        )
        schedule_publish(
            self.queue,
            draft.draft_id,
            draft.user_id,
            UploadMode(draft.upload_mode).value,
            now + RETRY_DELAY,
        )

    def _record_failure(self, draft: Draft, error: Exception) -> None:
        categorized = self.categorizer.categorize(error)
        logger.error(
            f"[PastDueRecovery] Failed to recover draft {draft.draft_id}: "
            f"{self.categorizer.format_error(categorized)}",
            exc_info=True,
        )

        try:
            self.persistence.update_draft(
                draft.draft_id,
                updated_at=self.clock(),
                error_message=f"Recovery failed: {categorized.error_context.message}",
            )
        except Exception as update_error:
            logger.error(
                f"[PastDueRecovery] Failed to update error message for draft "
                f"{draft.draft_id}: {update_error}"
            )
