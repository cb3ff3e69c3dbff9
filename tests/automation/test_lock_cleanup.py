"""
Lock cleanup tests.
"""

from datetime import timedelta

from src.automation import DraftStatus, LockCleanup


class TestLockCleanup:

    def test_releases_stale_locks_on_idle_drafts(
        self, persistence, create_user, create_draft, mock_clock
    ):
        """
        Setup: stale locks on a SCHEDULED and a DRAFT draft, a fresh lock,
               and a stale lock on an in-flight PUBLISHING draft
        Assertion: only the two stale idle locks are released
        """
        user = create_user()
        stale_at = mock_clock.now() - timedelta(minutes=45)
        scheduled = create_draft(
            user, status=DraftStatus.SCHEDULED, execution_lock_id="w-1", execution_locked_at=stale_at
        )
        draft = create_draft(user, execution_lock_id="w-2", execution_locked_at=stale_at)
        fresh = create_draft(
            user,
            status=DraftStatus.SCHEDULED,
            execution_lock_id="w-3",
            execution_locked_at=mock_clock.now() - timedelta(minutes=10),
        )
        in_flight = create_draft(
            user, status=DraftStatus.PUBLISHING, execution_lock_id="w-4", execution_locked_at=stale_at
        )

        released = LockCleanup(persistence, clock=mock_clock).run_once()

        assert released == 2
        assert persistence.get_draft(scheduled.draft_id).execution_locked_at is None
        assert persistence.get_draft(draft.draft_id).execution_lock_id is None
        assert persistence.get_draft(fresh.draft_id).execution_lock_id == "w-3"
        assert persistence.get_draft(in_flight.draft_id).execution_lock_id == "w-4"

    def test_nothing_to_release(self, persistence, mock_clock):
        assert LockCleanup(persistence, clock=mock_clock).run_once() == 0

    def test_storage_error_returns_zero(self, persistence, mock_clock, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(persistence, "release_stale_locks", broken)

        assert LockCleanup(persistence, clock=mock_clock).run_once() == 0
