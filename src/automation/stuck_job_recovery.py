"""
Stuck-Job Recovery sweep.

Finds drafts whose in-flight state has not advanced for an hour (a worker
crashed while holding the execution lock, or a legacy uploading/publishing
status was never moved on) and repairs them according to how far the
external publish got:

1. Ghost publish: the platform has a deviation_id, the DB never caught up
   -> complete the publish, count the post exactly once
2. Partial publish: files uploaded (stash_item_id) but never published
   -> reset to scheduled and retry in one minute
3. Failed upload: nothing reached the platform
   -> reset to draft

Recovery is idempotent: running the sweep again on the same rows produces
the same end state and never double counts a post.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from src.infra.alerting import AlertManager, SignalKind

from .entities import Draft, DraftStatus, UploadMode, utc_now
from .error_categorizer import ErrorCategorizer
from .persistence import PersistenceAdapter
from .work_queue import WorkQueue, schedule_publish


logger = logging.getLogger(__name__)


STUCK_TIMEOUT = timedelta(hours=1)
BATCH_SIZE = 100
MAX_RETRY_COUNT = 7
RETRY_DELAY = timedelta(minutes=1)
HIGH_FAILURE_RATE = 0.1

RETRY_MESSAGE = "Job was stuck and has been automatically retried"
RESET_TO_DRAFT_MESSAGE = "Job failed after timeout. Please try scheduling again."


@dataclass(frozen=True)
class GhostPublish:
    """Published externally; DB still shows it in flight."""

    deviation_id: str


@dataclass(frozen=True)
class PartialPublish:
    """Uploaded externally but not published; retryable."""

    stash_item_id: str


@dataclass(frozen=True)
class FailedUpload:
    """Nothing usable reached the platform."""


DraftRecoveryState = Union[GhostPublish, PartialPublish, FailedUpload]


def classify_recovery_state(draft: Draft) -> DraftRecoveryState:
    """Decide which recovery applies to a stuck draft."""
    if draft.deviation_id:
        return GhostPublish(deviation_id=draft.deviation_id)
    if draft.stash_item_id and draft.retry_count < MAX_RETRY_COUNT:
        return PartialPublish(stash_item_id=draft.stash_item_id)
    return FailedUpload()


class StuckJobRecovery:
    """
    Repairs drafts stuck in intermediate publish states.

    Storage cleanup after a ghost publish is fire-and-forget: it is
    requested through a signal (and `storage_cleanup`, when given), and
    its failure is only logged.
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        queue: WorkQueue,
        alerts: Optional[AlertManager] = None,
        clock: Callable[[], datetime] = utc_now,
        storage_cleanup: Optional[Callable[[str, str], None]] = None,
    ):
        """
        Initialize StuckJobRecovery.

        Args:
            persistence: PersistenceAdapter for storage
            queue: Work queue for retried publishes
            alerts: Signal destination
            clock: Source of "now"
            storage_cleanup: Called with (draft_id, user_id) after a ghost publish
        """
        self.persistence = persistence
        self.queue = queue
        self.alerts = alerts or AlertManager()
        self.clock = clock
        self.storage_cleanup = storage_cleanup
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
            "failed": 0,
            "ghost_published": 0,
            "retried": 0,
            "reset_to_draft": 0,
        }

        now = self.clock()
        try:
            stuck = self.persistence.find_stuck_drafts(now - STUCK_TIMEOUT, BATCH_SIZE)
        except Exception as e:
            logger.error(f"[StuckJobRecovery] Critical error querying stuck drafts: {e}", exc_info=True)
            return stats

        stats["found"] = len(stuck)
        if not stuck:
            logger.info("[StuckJobRecovery] No stuck jobs found")
            return stats

        logger.info(f"[StuckJobRecovery] Found {len(stuck)} stuck job(s), processing...")

        for draft in stuck:
            try:
                outcome = self.recover_draft(draft)
                stats[outcome] += 1
                stats["recovered"] += 1
            except Exception as e:
                categorized = self.categorizer.categorize(e)
                logger.error(
                    f"[StuckJobRecovery] Failed to recover draft {draft.draft_id}: "
                    f"{self.categorizer.format_error(categorized)}",
                    exc_info=True,
                )
                stats["failed"] += 1

        logger.info(
            f"[StuckJobRecovery] Recovery complete: "
            f"{stats['recovered']} recovered, {stats['failed']} failed"
        )

        failure_rate = stats["failed"] / len(stuck)
        if stats["failed"] > 0 and failure_rate > HIGH_FAILURE_RATE:
            self.alerts.warning(
                SignalKind.HIGH_FAILURE_RATE,
                "High stuck-job recovery failure rate",
                f"{stats['failed']}/{len(stuck)} stuck jobs could not be recovered "
                f"({round(failure_rate * 100)}%)",
                failed=stats["failed"],
                total=len(stuck),
            )

        return stats

    def recover_draft(self, draft: Draft) -> str:
        """
        Recover one stuck draft.

        Returns:
            Name of the recovery applied
        """
        now = self.clock()

        if draft.execution_lock_id:
            logger.info(
                f"[StuckJobRecovery] Releasing stale lock {draft.execution_lock_id} "
                f"on draft {draft.draft_id}"
            )
            self.persistence.release_execution_lock(draft.draft_id, now)

        state = classify_recovery_state(draft)

        if isinstance(state, GhostPublish):
            self._complete_ghost_publish(draft, state, now)
            return "ghost_published"

        if isinstance(state, PartialPublish):
            self._reset_and_retry(draft, now)
            return "retried"

        self._reset_to_draft(draft, now)
        return "reset_to_draft"

    def _complete_ghost_publish(self, draft: Draft, state: GhostPublish, now: datetime) -> None:
        increment = self.persistence.complete_ghost_publish(draft.draft_id, now)
        logger.info(
            f"[StuckJobRecovery] Completed ghost publish for draft {draft.draft_id} "
            f"(deviation {state.deviation_id})"
        )

        if increment:
            self.alerts.info(
                SignalKind.POST_COUNT_INCREMENTED,
                "Post count incremented",
                f"Recovered publish of draft {draft.draft_id} counted {increment} post(s)",
                draft_id=draft.draft_id,
                user_id=draft.user_id,
                increment=increment,
                upload_mode=UploadMode(draft.upload_mode).value,
            )

        self._request_storage_cleanup(draft)

    def _request_storage_cleanup(self, draft: Draft) -> None:
        try:
            self.alerts.info(
                SignalKind.STORAGE_CLEANUP_REQUESTED,
                "Storage cleanup requested",
                f"Files of published draft {draft.draft_id} can be removed",
                draft_id=draft.draft_id,
                user_id=draft.user_id,
            )
            if self.storage_cleanup is not None:
                self.storage_cleanup(draft.draft_id, draft.user_id)
        except Exception as e:
            logger.warning(
                f"[StuckJobRecovery] Storage cleanup request failed for draft {draft.draft_id}: {e}"
            )

    def _reset_and_retry(self, draft: Draft, now: datetime) -> None:
        self.persistence.update_draft(
            draft.draft_id,
            updated_at=now,
            status=DraftStatus.SCHEDULED,
            retry_count=0,
            error_message=RETRY_MESSAGE,
        )

        schedule_publish(
            self.queue,
            draft.draft_id,
            draft.user_id,
            UploadMode(draft.upload_mode).value,
            now + RETRY_DELAY,
        )
        logger.info(f"[StuckJobRecovery] Reset and queued retry for draft {draft.draft_id}")

    def _reset_to_draft(self, draft: Draft, now: datetime) -> None:
        self.persistence.update_draft(
            draft.draft_id,
            updated_at=now,
            status=DraftStatus.DRAFT,
            error_message=RESET_TO_DRAFT_MESSAGE,
            scheduled_at=None,
            actual_publish_at=None,
            jitter_seconds=0,
        )
        logger.info(f"[StuckJobRecovery] Reset draft {draft.draft_id} to draft")
