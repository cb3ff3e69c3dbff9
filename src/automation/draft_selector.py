"""
Draft Selector for the auto-scheduler.

Picks candidate drafts from a user's pool and claims them one at a time
with an optimistic version check, so concurrent scheduler instances never
claim the same draft. Losing a claim race is not an error: the candidate
is skipped and the next one tried.
"""

import logging
import random
from datetime import datetime
from typing import Callable, Optional

from .entities import Automation, Draft, SelectionMethod, utc_now
from .persistence import PersistenceAdapter


logger = logging.getLogger(__name__)


# Pool fetched for random selection
RANDOM_POOL_SIZE = 1000

# Ordered selection fetches this many candidates per requested draft
# to absorb lost claim races
CANDIDATE_MULTIPLIER = 3


class DraftSelector:
    """
    Selects and claims drafts for an automation.

    Selection methods:
    - random: up to RANDOM_POOL_SIZE candidates, shuffled in memory
    - fifo: oldest created first
    - lifo: newest created first
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize DraftSelector.

        Args:
            persistence: PersistenceAdapter for storage
            clock: Source of "now" for the claim timestamp
            rng: Random source for the random selection shuffle
        """
        self.persistence = persistence
        self.clock = clock
        self.rng = rng or random.Random()

    def find_candidates(self, automation: Automation, count: int) -> list[Draft]:
        """Fetch candidates in the order they should be claimed."""
        method = automation.draft_selection_method

        if method == SelectionMethod.RANDOM:
            candidates = self.persistence.list_draft_candidates(
                automation.user_id,
                newest_first=None,
                limit=RANDOM_POOL_SIZE,
            )
            # random.shuffle is Fisher-Yates
            self.rng.shuffle(candidates)
            return candidates

        return self.persistence.list_draft_candidates(
            automation.user_id,
            newest_first=(method == SelectionMethod.LIFO),
            limit=count * CANDIDATE_MULTIPLIER,
        )

    def select(self, automation: Automation, count: int) -> list[Draft]:
        """
        Claim up to `count` drafts for an automation.

        Claims are sequential; each is an independent conditional update.
        A claim that raises is logged and the candidate skipped.

        Returns:
            Claimed drafts, with scheduled_at and execution_version as
            written by the claim
        """
        if count <= 0:
            return []

        candidates = self.find_candidates(automation, count)
        if not candidates:
            return []

        selected: list[Draft] = []
        for candidate in candidates:
            if len(selected) >= count:
                break

            claimed_at = self.clock()
            try:
                won = self.persistence.claim_draft(
                    candidate.draft_id,
                    candidate.execution_version,
                    claimed_at,
                )
            except Exception as e:
                logger.warning(f"Failed to claim draft {candidate.draft_id}, skipping: {e}")
                continue

            if not won:
                logger.debug(f"Draft {candidate.draft_id} claimed by another process, skipping")
                continue

            candidate.scheduled_at = claimed_at
            candidate.execution_version += 1
            selected.append(candidate)

        logger.info(
            f"Automation {automation.automation_id}: claimed {len(selected)}/{count} draft(s) "
            f"from {len(candidates)} candidate(s) ({automation.draft_selection_method.value})"
        )
        return selected

    def release(self, draft: Draft) -> bool:
        """Return a claimed draft that could not be scheduled to the pool."""
        released = self.persistence.release_claim(draft.draft_id, draft.execution_version)
        if released:
            draft.scheduled_at = None
            logger.info(f"Released claim on draft {draft.draft_id}")
        return released
