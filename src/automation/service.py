"""
Automation Service - main entry point for the automation core.

This service wires every component together and owns the sweep tickers:
- PersistenceAdapter (record store)
- SqliteWorkQueue (publish job queue)
- AlertManager (signals)
- AutoScheduler, StuckJobRecovery, PastDueRecovery, LockCleanup (sweeps)

Usage:
    service = AutomationService.create(settings)
    service.start()
    # ... sweeps run in background threads ...
    service.stop()
"""

import logging
import os
import random
from datetime import datetime
from typing import Callable, Optional

from src.infra.alerting import AlertManager
from src.infra.config import Settings

from .auto_scheduler import AutoScheduler
from .entities import utc_now
from .errors import InvalidOperationError
from .lock_cleanup import LockCleanup
from .past_due_recovery import PastDueRecovery
from .persistence import PersistenceAdapter
from .stuck_job_recovery import StuckJobRecovery
from .sweeps import PeriodicSweep
from .work_queue import SqliteWorkQueue, WorkQueue


logger = logging.getLogger(__name__)


AUTO_SCHEDULER_INITIAL_DELAY_SECONDS = 30
STUCK_JOB_RECOVERY_INITIAL_DELAY_SECONDS = 5
PAST_DUE_RECOVERY_INITIAL_DELAY_SECONDS = 10
LOCK_CLEANUP_INITIAL_DELAY_SECONDS = 15


class AutomationService:
    """
    Coordinates the automation components.

    Provides:
    - Component initialization and wiring
    - Ticker startup and graceful shutdown
    - One-shot sweep entry points for the CLI
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        queue: WorkQueue,
        alerts: AlertManager,
        auto_scheduler: AutoScheduler,
        stuck_job_recovery: StuckJobRecovery,
        past_due_recovery: PastDueRecovery,
        lock_cleanup: LockCleanup,
        sweeps: Optional[list[PeriodicSweep]] = None,
    ):
        """
        Initialize AutomationService with all components.

        Use AutomationService.create() for convenient construction.
        """
        self.persistence = persistence
        self.queue = queue
        self.alerts = alerts
        self.auto_scheduler = auto_scheduler
        self.stuck_job_recovery = stuck_job_recovery
        self.past_due_recovery = past_due_recovery
        self.lock_cleanup = lock_cleanup
        self.sweeps: list[PeriodicSweep] = sweeps or []

        self._started = False

    @classmethod
    def create(
        cls,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
        alerts: Optional[AlertManager] = None,
    ) -> "AutomationService":
        """
        Create an AutomationService with all components wired together.

        Args:
            settings: Database paths, sweep toggles and periods
            clock: Source of "now" for every component
            rng: Random source for jitter and random selection
            alerts: Signal destination (default: built from settings)

        Returns:
            Configured AutomationService

        Raises:
            InvalidOperationError: If both databases resolve to the same file
        """
        automation_db = os.path.realpath(settings.automation_db_path)
        if automation_db == os.path.realpath(settings.work_queue_db_path):
            # enqueue writes on a second connection inside the record-store transaction
            raise InvalidOperationError(
                f"Work queue and record store must use separate databases: {automation_db}"
            )

        persistence = PersistenceAdapter(settings.automation_db_path)
        queue = SqliteWorkQueue(settings.work_queue_db_path, clock=clock)
        alerts = alerts or AlertManager.from_settings(settings)

        auto_scheduler = AutoScheduler(persistence, queue, clock=clock, rng=rng)
        stuck_job_recovery = StuckJobRecovery(persistence, queue, alerts=alerts, clock=clock)
        past_due_recovery = PastDueRecovery(persistence, queue, alerts=alerts, clock=clock)
        lock_cleanup = LockCleanup(persistence, clock=clock)

        sweeps = []
        if settings.auto_scheduler_enabled:
            sweeps.append(PeriodicSweep(
                "AutoScheduler",
                auto_scheduler.run_once,
                settings.auto_scheduler_interval_seconds,
                AUTO_SCHEDULER_INITIAL_DELAY_SECONDS,
            ))
        if settings.stuck_job_recovery_enabled:
            sweeps.append(PeriodicSweep(
                "StuckJobRecovery",
                stuck_job_recovery.run_once,
                settings.stuck_job_recovery_interval_seconds,
                STUCK_JOB_RECOVERY_INITIAL_DELAY_SECONDS,
            ))
        if settings.past_due_recovery_enabled:
            sweeps.append(PeriodicSweep(
                "PastDueRecovery",
                past_due_recovery.run_once,
                settings.past_due_recovery_interval_seconds,
                PAST_DUE_RECOVERY_INITIAL_DELAY_SECONDS,
            ))
        if settings.lock_cleanup_enabled:
            sweeps.append(PeriodicSweep(
                "LockCleanup",
                lock_cleanup.run_once,
                settings.lock_cleanup_interval_seconds,
                LOCK_CLEANUP_INITIAL_DELAY_SECONDS,
            ))

        return cls(
            persistence=persistence,
            queue=queue,
            alerts=alerts,
            auto_scheduler=auto_scheduler,
            stuck_job_recovery=stuck_job_recovery,
            past_due_recovery=past_due_recovery,
            lock_cleanup=lock_cleanup,
            sweeps=sweeps,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start every enabled sweep ticker."""
        if self._started:
            raise RuntimeError("Automation service already started")

        logger.info("Starting automation service...")
        for sweep in self.sweeps:
            sweep.start()
        self._started = True
        logger.info(f"Automation service started ({len(self.sweeps)} sweep(s))")

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop every sweep ticker.

        A sweep in progress finishes first (no preemption).
        """
        if not self._started:
            return

        logger.info("Stopping automation service...")
        for sweep in self.sweeps:
            sweep.stop(timeout=timeout)
        self._started = False
        logger.info("Automation service stopped")

    @property
    def is_running(self) -> bool:
        """Check if the service is running."""
        return self._started and any(sweep.is_running() for sweep in self.sweeps)

    # =========================================================================
    # One-shot Sweeps
    # =========================================================================

    def run_auto_scheduler(self) -> dict:
        return self.auto_scheduler.run_once()

    def run_stuck_job_recovery(self) -> dict:
        return self.stuck_job_recovery.run_once()

    def run_past_due_recovery(self) -> dict:
        return self.past_due_recovery.run_once()

    def run_lock_cleanup(self) -> int:
        return self.lock_cleanup.run_once()
