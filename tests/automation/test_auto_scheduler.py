"""
Auto-scheduler orchestration tests.

Covers one sweep end to end: lock, rule evaluation, claim, defaults,
jitter, atomic schedule + enqueue, execution log, lock release.
"""

import random
from datetime import timedelta

import pytest

from src.automation import (
    AutoScheduler,
    Automation,
    DraftStatus,
    JobState,
    QueueError,
    RuleType,
    SelectionMethod,
)
from src.automation.auto_scheduler import LOCK_TIMEOUT, NO_DRAFTS_MESSAGE, compute_jitter_seconds


class FailingQueue:
    """Work queue whose enqueue always fails."""

    def get_job(self, job_key):
        return None

    def enqueue(self, job_key, name, payload, deliver_at):
        raise QueueError(job_key, "broker unavailable")


@pytest.fixture
def scheduler(persistence, work_queue, mock_clock, rng) -> AutoScheduler:
    return AutoScheduler(persistence, work_queue, clock=mock_clock, rng=rng)


NINE_AM = [{"type": RuleType.FIXED_TIME, "time_of_day": "09:00"}]


class TestSchedulingSweep:

    def test_fixed_time_rule_schedules_oldest_draft(
        self, scheduler, persistence, work_queue, create_user, create_automation, create_draft, mock_clock
    ):
        """
        Setup: UTC owner, FIFO automation with a 09:00 rule, two drafts
        Action: run one sweep at 09:04
        Assertion: the older draft is scheduled and queued, one log with count 1
        """
        user = create_user()
        automation = create_automation(user=user, rules=NINE_AM)
        older = create_draft(user, age_minutes=60)
        newer = create_draft(user, age_minutes=5)

        stats = scheduler.run_once()

        assert stats == {
            "automations": 1,
            "processed": 1,
            "skipped_locked": 0,
            "scheduled": 1,
            "errors": 0,
        }

        scheduled = persistence.get_draft(older.draft_id)
        assert scheduled.status == DraftStatus.SCHEDULED
        assert scheduled.automation_id == automation.automation_id
        assert scheduled.scheduled_at == mock_clock.now()
        assert scheduled.actual_publish_at == mock_clock.now()
        assert scheduled.jitter_seconds == 0

        assert persistence.get_draft(newer.draft_id).status == DraftStatus.DRAFT

        job = work_queue.get_job(f"draft-{older.draft_id}")
        assert job is not None
        assert job.state == JobState.WAITING
        assert job.payload == {
            "draft_id": older.draft_id,
            "user_id": user.user_id,
            "upload_mode": "single",
        }

        logs = persistence.list_execution_logs(automation.automation_id)
        assert len(logs) == 1
        assert logs[0].scheduled_count == 1
        assert logs[0].triggered_by_rule_type == RuleType.FIXED_TIME
        assert logs[0].error_message is None

        assert persistence.get_automation(automation.automation_id).is_executing is False

    def test_jitter_delays_publish(
        self, scheduler, persistence, work_queue, create_user, create_automation, create_draft, mock_clock
    ):
        user = create_user()
        create_automation(user=user, rules=NINE_AM, jitter_min_seconds=90, jitter_max_seconds=90)
        draft = create_draft(user)

        scheduler.run_once()

        scheduled = persistence.get_draft(draft.draft_id)
        assert scheduled.jitter_seconds == 90
        assert scheduled.actual_publish_at == mock_clock.now() + timedelta(seconds=90)
        assert work_queue.get_job(f"draft-{draft.draft_id}").state == JobState.DELAYED

    def test_defaults_written_with_schedule(
        self, scheduler, persistence, create_user, create_automation, create_draft
    ):
        user = create_user()
        create_automation(
            user=user,
            rules=NINE_AM,
            defaults=[{"field_name": "tags", "value": ["auto"], "apply_if_empty": True}],
            stash_only_by_default=True,
        )
        draft = create_draft(user)

        scheduler.run_once()

        scheduled = persistence.get_draft(draft.draft_id)
        assert scheduled.tags == ["auto"]
        assert scheduled.stash_only is True

    def test_no_rule_triggered_does_nothing(
        self, scheduler, persistence, create_user, create_automation, create_draft, mock_clock
    ):
        user = create_user()
        automation = create_automation(user=user, rules=NINE_AM)
        draft = create_draft(user)
        mock_clock.tick(60 * 60)

        stats = scheduler.run_once()

        assert stats["scheduled"] == 0
        assert persistence.get_draft(draft.draft_id).status == DraftStatus.DRAFT
        assert persistence.list_execution_logs(automation.automation_id) == []

    def test_no_drafts_logs_zero(self, scheduler, persistence, create_automation):
        automation = create_automation(rules=NINE_AM)

        scheduler.run_once()

        logs = persistence.list_execution_logs(automation.automation_id)
        assert len(logs) == 1
        assert logs[0].scheduled_count == 0
        assert logs[0].error_message == NO_DRAFTS_MESSAGE
        assert logs[0].triggered_by_rule_type is None

    def test_fixed_interval_schedules_batch_once_per_interval(
        self, scheduler, persistence, create_user, create_automation, create_draft, mock_clock
    ):
        user = create_user()
        create_automation(
            user=user,
            rules=[{"type": RuleType.FIXED_INTERVAL, "interval_minutes": 60, "deviations_per_interval": 2}],
        )
        for age in (30, 20, 10):
            create_draft(user, age_minutes=age)

        assert scheduler.run_once()["scheduled"] == 2

        mock_clock.tick(5 * 60)
        assert scheduler.run_once()["scheduled"] == 0

        mock_clock.tick(55 * 60)
        assert scheduler.run_once()["scheduled"] == 1

    def test_daily_quota_accumulates_across_sweeps(
        self, scheduler, create_user, create_automation, create_draft, mock_clock
    ):
        user = create_user()
        create_automation(user=user, rules=[{"type": RuleType.DAILY_QUOTA, "daily_quota": 2}])
        for age in (40, 30, 20, 10):
            create_draft(user, age_minutes=age)

        results = []
        for _ in range(3):
            results.append(scheduler.run_once()["scheduled"])
            mock_clock.tick(5 * 60)

        assert results == [1, 1, 0]

    def test_random_selection_schedules_from_pool(
        self, scheduler, persistence, create_user, create_automation, create_draft
    ):
        user = create_user()
        create_automation(user=user, rules=NINE_AM, draft_selection_method=SelectionMethod.RANDOM)
        drafts = [create_draft(user) for _ in range(5)]

        assert scheduler.run_once()["scheduled"] == 1
        statuses = [persistence.get_draft(d.draft_id).status for d in drafts]
        assert statuses.count(DraftStatus.SCHEDULED) == 1


class TestAutomationLock:

    def test_held_lock_is_respected(
        self, scheduler, persistence, create_user, create_automation, create_draft, mock_clock
    ):
        """
        Setup: another sweep acquired the automation lock one minute ago
        Assertion: the automation is skipped, nothing scheduled, no log written
        """
        user = create_user()
        automation = create_automation(user=user, rules=NINE_AM)
        draft = create_draft(user)
        persistence.try_acquire_automation_lock(
            automation.automation_id, mock_clock.now() - timedelta(minutes=1), LOCK_TIMEOUT
        )

        stats = scheduler.run_once()

        assert stats["skipped_locked"] == 1
        assert stats["scheduled"] == 0
        assert persistence.get_draft(draft.draft_id).status == DraftStatus.DRAFT
        assert persistence.list_execution_logs(automation.automation_id) == []
        assert persistence.get_automation(automation.automation_id).is_executing is True

    def test_stale_lock_is_reclaimed(
        self, scheduler, persistence, create_user, create_automation, create_draft, mock_clock
    ):
        user = create_user()
        automation = create_automation(user=user, rules=NINE_AM)
        create_draft(user)
        persistence.try_acquire_automation_lock(
            automation.automation_id, mock_clock.now() - timedelta(minutes=10), LOCK_TIMEOUT
        )

        assert scheduler.run_once()["scheduled"] == 1
        assert persistence.get_automation(automation.automation_id).is_executing is False

    def test_lock_released_when_processing_raises(
        self, scheduler, persistence, create_automation, monkeypatch
    ):
        automation = create_automation(rules=NINE_AM)

        def broken_evaluate(automation, now=None):
            raise RuntimeError("evaluator exploded")

        monkeypatch.setattr(scheduler.rule_evaluator, "evaluate", broken_evaluate)

        stats = scheduler.run_once()

        assert stats["errors"] == 1
        assert persistence.get_automation(automation.automation_id).is_executing is False
        logs = persistence.list_execution_logs(automation.automation_id)
        assert len(logs) == 1
        assert logs[0].error_message == "evaluator exploded"

    def test_listing_failure_ends_sweep_cleanly(self, scheduler, persistence, monkeypatch, caplog):
        def broken_list():
            raise RuntimeError("database disk image is malformed")

        monkeypatch.setattr(persistence, "list_enabled_automations", broken_list)

        stats = scheduler.run_once()

        assert stats == {
            "automations": 0,
            "processed": 0,
            "skipped_locked": 0,
            "scheduled": 0,
            "errors": 0,
        }
        assert "Critical error listing automations" in caplog.text

class TestScheduleFailure:

    def test_enqueue_failure_rolls_back_and_releases_claim(
        self, persistence, create_user, create_automation, create_draft, mock_clock
    ):
        """
        Setup: queue rejects every enqueue
        Assertion: draft is still an unclaimed DRAFT, log records count 0 and the error
        """
        user = create_user()
        automation = create_automation(user=user, rules=NINE_AM)
        draft = create_draft(user)
        scheduler = AutoScheduler(persistence, FailingQueue(), clock=mock_clock, rng=random.Random(1))

        stats = scheduler.run_once()

        assert stats["scheduled"] == 0
        fresh = persistence.get_draft(draft.draft_id)
        assert fresh.status == DraftStatus.DRAFT
        assert fresh.scheduled_at is None
        assert fresh.actual_publish_at is None

        logs = persistence.list_execution_logs(automation.automation_id)
        assert len(logs) == 1
        assert logs[0].scheduled_count == 0
        assert "broker unavailable" in logs[0].error_message

        candidates = persistence.list_draft_candidates(user.user_id, newest_first=False, limit=10)
        assert [d.draft_id for d in candidates] == [draft.draft_id]


class TestJitter:

    def test_inverted_range_clamps_to_min(self):
        automation = Automation.create("user-1", jitter_min_seconds=30, jitter_max_seconds=10)
        assert compute_jitter_seconds(automation, random.Random(3)) == 30

    def test_within_range(self):
        automation = Automation.create("user-1", jitter_min_seconds=0, jitter_max_seconds=300)
        rng = random.Random(3)
        for _ in range(100):
            assert 0 <= compute_jitter_seconds(automation, rng) <= 300
