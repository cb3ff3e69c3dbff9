"""
Lock Cleanup sweep.

Releases draft execution locks left behind by crashed or timed-out
workers, for drafts that are not in flight (scheduled or draft), so the
past-due sweep and the publish worker can pick them up again.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from .entities import DraftStatus, utc_now
from .persistence import PersistenceAdapter


logger = logging.getLogger(__name__)


STALE_LOCK_TIMEOUT = timedelta(minutes=30)

CLEANABLE_STATUSES = [DraftStatus.SCHEDULED, DraftStatus.DRAFT]


class LockCleanup:
    """Releases stale draft execution locks."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.persistence = persistence
        self.clock = clock

    def run_once(self) -> int:
        """
        Release locks older than STALE_LOCK_TIMEOUT.

        Returns:
            Number of locks released (0 on failure)
        """
        now = self.clock()
        try:
            released = self.persistence.release_stale_locks(
                locked_before=now - STALE_LOCK_TIMEOUT,
                statuses=CLEANABLE_STATUSES,
                updated_at=now,
            )
        except Exception as e:
            logger.error(f"[LockCleanup] Failed to clean up stale locks: {e}", exc_info=True)
            return 0

        if released > 0:
            logger.info(f"[LockCleanup] Released {released} stale lock(s)")
        return released
