"""
Automation Scheduler (auto-scheduler sweep).

For each enabled automation, once per sweep:
1. Acquire the automation execution lock (conditional update); skip if held
2. Evaluate schedule rules in the owner's timezone
3. Claim drafts with optimistic version checks
4. Per draft: apply defaults, add jitter, then mark SCHEDULED and enqueue
   the publish job in one transaction
5. Write one ExecutionLog row
6. Release the lock, always

Multiple scheduler instances may run at once; they coordinate only through
the automation lock and the draft execution_version.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from .default_values import apply_default_values
from .draft_selector import DraftSelector
from .entities import Automation, Draft, ExecutionLog, UploadMode, utc_now
from .error_categorizer import ErrorCategorizer
from .persistence import PersistenceAdapter
from .rule_evaluator import RuleEvaluator, calculate_schedule_count
from .work_queue import WorkQueue, schedule_publish


logger = logging.getLogger(__name__)


# An automation lock older than this was abandoned by a crashed sweep
LOCK_TIMEOUT = timedelta(minutes=5)

NO_DRAFTS_MESSAGE = "No drafts available"


def compute_jitter_seconds(automation: Automation, rng: random.Random) -> int:
    """Uniform integer jitter in [jitter_min_seconds, jitter_max_seconds]."""
    jitter_range = max(0, automation.jitter_max_seconds - automation.jitter_min_seconds)
    return automation.jitter_min_seconds + rng.randint(0, jitter_range)


class AutoScheduler:
    """
    Orchestrates rule evaluation, draft selection and scheduling.

    What AutoScheduler MUST NOT do:
    - Publish anything (the external worker consumes the queue)
    - Hold an automation lock past the end of its own run
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        queue: WorkQueue,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize AutoScheduler.

        Args:
            persistence: PersistenceAdapter for storage
            queue: Work queue receiving publish jobs
            clock: Source of "now"
            rng: Random source for jitter and random selection
        """
        self.persistence = persistence
        self.queue = queue
        self.clock = clock
        self.rng = rng or random.Random()

        self.rule_evaluator = RuleEvaluator(persistence, clock=clock)
        self.draft_selector = DraftSelector(persistence, clock=clock, rng=self.rng)
        self.categorizer = ErrorCategorizer(clock=clock)

    # =========================================================================
    # Sweep
    # =========================================================================

    def run_once(self) -> dict:
        """
        Run one scheduler sweep over all enabled automations.

        Returns:
            Sweep statistics
        """
        stats = {
            "automations": 0,
            "processed": 0,
            "skipped_locked": 0,
            "scheduled": 0,
            "errors": 0,
        }

        logger.info("[AutoScheduler] Running scheduled check...")

        try:
            automations = self.persistence.list_enabled_automations()
        except Exception as e:
            logger.error(f"[AutoScheduler] Critical error listing automations: {e}", exc_info=True)
            return stats

        stats["automations"] = len(automations)
        if not automations:
            logger.info("[AutoScheduler] No enabled automations found")
            return stats

        for automation in automations:
            try:
                scheduled = self.process_automation(automation)
            except Exception as e:
                stats["errors"] += 1
                logger.error(
                    f"[AutoScheduler] Failed to process automation {automation.automation_id}: {e}",
                    exc_info=True,
                )
                self._log_execution(automation, 0, error_message=str(e) or type(e).__name__)
                continue

            if scheduled is None:
                stats["skipped_locked"] += 1
            else:
                stats["processed"] += 1
                stats["scheduled"] += scheduled

        logger.info(
            f"[AutoScheduler] Check complete: {stats['scheduled']} draft(s) scheduled "
            f"across {stats['processed']} automation(s)"
        )
        return stats

    # =========================================================================
    # Per Automation
    # =========================================================================

    def process_automation(self, automation: Automation) -> Optional[int]:
        """
        Run one automation under its execution lock.

        Returns:
            Number of drafts scheduled, or None if another run holds the lock
        """
        now = self.clock()
        if not self.persistence.try_acquire_automation_lock(
            automation.automation_id, now, LOCK_TIMEOUT
        ):
            logger.info(
                f"[AutoScheduler] Automation {automation.automation_id} is already executing, skipping"
            )
            return None

        try:
            return self._run_locked(automation, now)
        finally:
            self.persistence.release_automation_lock(automation.automation_id)

    def _run_locked(self, automation: Automation, now: datetime) -> int:
        triggered = self.rule_evaluator.evaluate(automation, now)
        if not triggered:
            logger.debug(f"[AutoScheduler] No rules triggered for automation {automation.automation_id}")
            return 0

        count = calculate_schedule_count(triggered)
        if count == 0:
            return 0

        logger.info(
            f"[AutoScheduler] Automation {automation.automation_id}: "
            f"{len(triggered)} rule(s) triggered, scheduling {count} draft(s)"
        )

        drafts = self.draft_selector.select(automation, count)
        if not drafts:
            logger.info(f"[AutoScheduler] No drafts available for user {automation.user_id}")
            self._log_execution(automation, 0, error_message=NO_DRAFTS_MESSAGE)
            return 0

        scheduled = 0
        last_error: Optional[str] = None
        for draft in drafts:
            try:
                self.schedule_draft(draft, automation)
                scheduled += 1
            except Exception as e:
                categorized = self.categorizer.categorize(e)
                last_error = categorized.error_context.message
                logger.error(
                    f"[AutoScheduler] Failed to schedule draft {draft.draft_id}: "
                    f"{self.categorizer.format_error(categorized)}"
                )
                self._release_claim(draft)

        self._log_execution(
            automation,
            scheduled,
            error_message=last_error,
            triggered_by_rule_type=triggered[0].type,
        )
        logger.info(
            f"[AutoScheduler] Scheduled {scheduled}/{len(drafts)} draft(s) "
            f"for automation {automation.automation_id}"
        )
        return scheduled

    def schedule_draft(self, draft: Draft, automation: Automation) -> datetime:
        """
        Mark one claimed draft SCHEDULED and enqueue its publish job atomically.

        Returns:
            The publish time

        Raises:
            QueueError: If the enqueue failed (the draft update is rolled back)
            InvalidOperationError: If the claim was lost in the meantime
        """
        updates = apply_default_values(draft, automation)

        now = self.clock()
        jitter_seconds = compute_jitter_seconds(automation, self.rng)
        actual_publish_at = now + timedelta(seconds=jitter_seconds)
        upload_mode = UploadMode(updates.get("upload_mode", draft.upload_mode)).value

        fields = {
            **updates,
            "scheduled_at": now,
            "jitter_seconds": jitter_seconds,
            "actual_publish_at": actual_publish_at,
            "automation_id": automation.automation_id,
        }

        self.persistence.schedule_draft(
            draft.draft_id,
            draft.execution_version,
            fields,
            enqueue=lambda: schedule_publish(
                self.queue,
                draft.draft_id,
                draft.user_id,
                upload_mode,
                actual_publish_at,
            ),
            updated_at=now,
        )

        logger.info(
            f"[AutoScheduler] Scheduled draft {draft.draft_id} for "
            f"{actual_publish_at.isoformat()} (jitter {jitter_seconds}s)"
        )
        return actual_publish_at

    def _release_claim(self, draft: Draft) -> None:
        try:
            self.draft_selector.release(draft)
        except Exception as e:
            logger.error(f"[AutoScheduler] Failed to release claim on draft {draft.draft_id}: {e}")

    def _log_execution(
        self,
        automation: Automation,
        scheduled_count: int,
        error_message: Optional[str] = None,
        triggered_by_rule_type=None,
    ) -> None:
        try:
            self.persistence.create_execution_log(
                ExecutionLog.create(
                    automation_id=automation.automation_id,
                    scheduled_count=scheduled_count,
                    error_message=error_message,
                    triggered_by_rule_type=triggered_by_rule_type,
                    executed_at=self.clock(),
                )
            )
        except Exception as e:
            logger.error(
                f"[AutoScheduler] Failed to write execution log for automation "
                f"{automation.automation_id}: {e}"
            )
