"""
Publish automation - main entry point.

Runs the automation sweeps (auto-scheduler, stuck-job recovery, past-due
recovery, lock cleanup) as a long-running service, or runs one sweep once
for manual intervention.
"""

import argparse
import json
import logging
import signal
import sys
import time
from typing import Optional

from src.automation.errors import InvalidOperationError
from src.automation.service import AutomationService
from src.infra.config import load_settings
from src.infra.logging_config import setup_logging


logger = logging.getLogger("src.main")

# Graceful shutdown support
shutdown_requested = False

ONE_SHOT_COMMANDS = {
    "auto-schedule": "run_auto_scheduler",
    "stuck-recovery": "run_stuck_job_recovery",
    "past-due-recovery": "run_past_due_recovery",
    "lock-cleanup": "run_lock_cleanup",
}


def signal_handler(signum, frame):
    """SIGINT / SIGTERM handler - stop after the running sweeps finish."""
    global shutdown_requested
    signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
    logger.info(f"{signal_name} received - shutting down after running sweeps finish")
    shutdown_requested = True


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Publish automation scheduler and recovery sweeps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run every enabled sweep until SIGINT/SIGTERM
  python main.py run

  # Run for one hour
  python main.py run --duration-seconds 3600

  # Run one sweep once
  python main.py past-due-recovery
        """
    )
    parser.add_argument(
        "command",
        choices=["run", *ONE_SHOT_COMMANDS],
        help="'run' starts the service; the others run one sweep once and exit",
    )
    parser.add_argument(
        "--duration-seconds",
        type=int,
        default=None,
        help="Stop the service after this many seconds (run only)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help=".env file to load (default: search from the current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override LOG_LEVEL",
    )
    return parser.parse_args(argv)


def run_service(service: AutomationService, duration_seconds: Optional[int]) -> None:
    """Run the sweep tickers until shutdown or the duration elapses."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    start_time = time.time()
    try:
        while not shutdown_requested:
            if duration_seconds and time.time() - start_time >= duration_seconds:
                logger.info(f"Duration limit reached ({duration_seconds}s) - stopping")
                break
            time.sleep(1)
    finally:
        service.stop()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.env_file)
    setup_logging(args.log_level or settings.log_level, settings.log_dir)

    try:
        service = AutomationService.create(settings)
    except InvalidOperationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if args.command == "run":
        run_service(service, args.duration_seconds)
        return 0

    result = getattr(service, ONE_SHOT_COMMANDS[args.command])()
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
