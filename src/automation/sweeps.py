"""
Periodic sweep runner.

Each sweep (auto-scheduler, stuck-job recovery, past-due recovery, lock
cleanup) runs in its own daemon thread: wait an initial delay, run, then
run again every period until stopped. A sweep that raises is logged and
the ticker keeps going; leftover state is repaired by the next run or by
the recovery sweeps.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


class SweepState(str, Enum):
    """Ticker lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class PeriodicSweep:
    """Runs a callable after an initial delay, then on a fixed period."""

    def __init__(
        self,
        name: str,
        run: Callable[[], Any],
        period_seconds: float,
        initial_delay_seconds: float = 0.0,
    ):
        """
        Initialize PeriodicSweep.

        Args:
            name: Name used in logs and the thread name
            run: The sweep; its return value is logged at debug level
            period_seconds: Seconds between the start of consecutive runs; a
                run that overruns the period is followed immediately by the next
            initial_delay_seconds: Seconds before the first run
        """
        if period_seconds <= 0:
            raise ValueError(f"period_seconds must be positive, got {period_seconds}")

        self.name = name
        self.run = run
        self.period_seconds = period_seconds
        self.initial_delay_seconds = initial_delay_seconds

        self._state = SweepState.STOPPED
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.run_count = 0

    @property
    def state(self) -> SweepState:
        """Get current ticker state."""
        return self._state

    def is_running(self) -> bool:
        """Check if the ticker is running."""
        return self._state == SweepState.RUNNING

    def run_now(self) -> Any:
        """
        Run the sweep once in the calling thread.

        Exceptions are logged and swallowed, as in the loop.

        Returns:
            The sweep's result, or None if it raised
        """
        try:
            result = self.run()
            logger.debug(f"[{self.name}] Sweep result: {result}")
            return result
        except Exception as e:
            logger.error(f"[{self.name}] Sweep failed: {e}", exc_info=True)
            return None
        finally:
            self.run_count += 1

    def start(self) -> None:
        """Start the ticker in a background thread."""
        if self._state != SweepState.STOPPED:
            raise RuntimeError(f"Cannot start sweep {self.name} in {self._state.value} state")

        self._stop_event.clear()
        self._state = SweepState.RUNNING
        self._thread = threading.Thread(target=self._loop, name=f"sweep-{self.name}", daemon=True)
        self._thread.start()

        logger.info(
            f"[{self.name}] Started (every {self.period_seconds}s, "
            f"first run in {self.initial_delay_seconds}s)"
        )

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the ticker.

        A run in progress is not interrupted; waits up to `timeout` for it.
        """
        if self._state == SweepState.STOPPED:
            return

        self._state = SweepState.STOPPING
        self._stop_event.set()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"[{self.name}] Thread did not stop within timeout")
            self._thread = None

        self._state = SweepState.STOPPED
        logger.info(f"[{self.name}] Stopped")

    def _loop(self) -> None:
        if self._stop_event.wait(self.initial_delay_seconds):
            return

        while not self._stop_event.is_set():
            started = time.monotonic()
            self.run_now()
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self.period_seconds - elapsed))
