"""
Work queue tests.

- Delayed/waiting classification on the clock
- Duplicate keys are rejected
- schedule_publish de-duplicates by job key
"""

from datetime import timedelta

import pytest

from src.automation import JobState, QueueError, QueueJob, job_key_for_draft, schedule_publish
from src.automation.work_queue import PUBLISH_JOB_NAME


def test_job_key_for_draft():
    assert job_key_for_draft("abc") == "draft-abc"


class TestSqliteWorkQueue:
    """SqliteWorkQueue producer and worker sides."""

    def test_future_job_is_delayed_until_due(self, work_queue, mock_clock):
        deliver_at = mock_clock.now() + timedelta(minutes=1)

        job = work_queue.enqueue("draft-1", PUBLISH_JOB_NAME, {"draft_id": "1"}, deliver_at)
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 0
        assert job.deliver_at == deliver_at

        mock_clock.tick(60)
        assert work_queue.get_job("draft-1").state == JobState.WAITING

    def test_due_job_is_waiting(self, work_queue, mock_clock):
        job = work_queue.enqueue("draft-1", PUBLISH_JOB_NAME, {}, mock_clock.now())
        assert job.state == JobState.WAITING

    def test_duplicate_key_raises_queue_error(self, work_queue, mock_clock):
        work_queue.enqueue("draft-1", PUBLISH_JOB_NAME, {}, mock_clock.now())

        with pytest.raises(QueueError) as exc_info:
            work_queue.enqueue("draft-1", PUBLISH_JOB_NAME, {}, mock_clock.now())
        assert exc_info.value.job_key == "draft-1"

    def test_remove_through_job_handle(self, work_queue, mock_clock):
        job = work_queue.enqueue("draft-1", PUBLISH_JOB_NAME, {}, mock_clock.now())

        assert job.remove() is True
        assert work_queue.get_job("draft-1") is None

    def test_detached_job_cannot_be_removed(self):
        job = QueueJob(job_key="draft-1", name=PUBLISH_JOB_NAME, payload={}, state=JobState.WAITING)

        with pytest.raises(QueueError):
            job.remove()

    def test_worker_transitions_count_attempts(self, work_queue, mock_clock):
        work_queue.enqueue("draft-1", PUBLISH_JOB_NAME, {}, mock_clock.now())

        job = work_queue.mark_active("draft-1")
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1

        job = work_queue.mark_retry("draft-1", mock_clock.now() + timedelta(seconds=30))
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 1

        work_queue.mark_active("draft-1")
        job = work_queue.mark_failed("draft-1", "platform error")
        assert job.state == JobState.FAILED
        assert job.attempts_made == 2

    def test_transition_of_missing_job_raises(self, work_queue):
        with pytest.raises(QueueError):
            work_queue.mark_completed("draft-missing")

    def test_fetch_due_returns_only_due_jobs(self, work_queue, mock_clock):
        now = mock_clock.now()
        work_queue.enqueue("draft-late", PUBLISH_JOB_NAME, {}, now + timedelta(minutes=5))
        work_queue.enqueue("draft-due", PUBLISH_JOB_NAME, {}, now - timedelta(seconds=1))

        due = work_queue.fetch_due()
        assert [job.job_key for job in due] == ["draft-due"]


class TestSchedulePublish:
    """De-duplication by job key."""

    def test_enqueues_payload(self, work_queue, mock_clock):
        deliver_at = mock_clock.now() + timedelta(minutes=1)

        assert schedule_publish(work_queue, "d1", "u1", "multiple", deliver_at) is True

        job = work_queue.get_job("draft-d1")
        assert job.name == PUBLISH_JOB_NAME
        assert job.payload == {"draft_id": "d1", "user_id": "u1", "upload_mode": "multiple"}
        assert job.deliver_at == deliver_at

    def test_pending_job_is_left_alone(self, work_queue, mock_clock):
        first = mock_clock.now() + timedelta(minutes=1)
        schedule_publish(work_queue, "d1", "u1", "single", first)

        assert schedule_publish(work_queue, "d1", "u1", "single", first + timedelta(hours=1)) is False
        assert work_queue.get_job("draft-d1").deliver_at == first

    def test_completed_job_is_replaced(self, work_queue, mock_clock):
        schedule_publish(work_queue, "d1", "u1", "single", mock_clock.now())
        work_queue.mark_active("draft-d1")
        work_queue.mark_completed("draft-d1")

        deliver_at = mock_clock.now() + timedelta(minutes=1)
        assert schedule_publish(work_queue, "d1", "u1", "single", deliver_at) is True

        job = work_queue.get_job("draft-d1")
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 0
