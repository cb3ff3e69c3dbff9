"""
Environment-driven configuration for the automation service.

Values are read from the process environment (optionally seeded from a
.env file) once, into a frozen Settings instance.

Environment Variables:
- AUTOMATION_DB_PATH: Record store database (default: data/automation.db)
- WORK_QUEUE_DB_PATH: Work queue database (default: data/work_queue.db)
- LOG_LEVEL: Logging level (default: INFO)
- LOG_DIR: Log file directory (default: logs)
- AUTO_SCHEDULER_ENABLED: Run the auto-scheduler sweep (default: true)
- STUCK_JOB_RECOVERY_ENABLED: Run the stuck-job recovery sweep (default: true)
- PAST_DUE_RECOVERY_ENABLED: Run the past-due recovery sweep (default: true)
- LOCK_CLEANUP_ENABLED: Run the lock cleanup sweep (default: true)
- AUTO_SCHEDULER_INTERVAL_SECONDS: Auto-scheduler period (default: 300)
- STUCK_JOB_RECOVERY_INTERVAL_SECONDS: Stuck-job recovery period (default: 900)
- PAST_DUE_RECOVERY_INTERVAL_SECONDS: Past-due recovery period (default: 600)
- LOCK_CLEANUP_INTERVAL_SECONDS: Lock cleanup period (default: 300)
- ENABLE_ALERTS: Deliver alerts to the webhook (default: false)
- ALERT_WEBHOOK_URL: Alert webhook endpoint (default: empty)
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    elif val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"[Config] Invalid integer for {key}: {val}, using default: {default}")
    return default


@dataclass(frozen=True)
class Settings:
    """Service settings."""

    automation_db_path: str = "data/automation.db"
    work_queue_db_path: str = "data/work_queue.db"
    log_level: str = "INFO"
    log_dir: str = "logs"

    auto_scheduler_enabled: bool = True
    stuck_job_recovery_enabled: bool = True
    past_due_recovery_enabled: bool = True
    lock_cleanup_enabled: bool = True

    auto_scheduler_interval_seconds: int = 300
    stuck_job_recovery_interval_seconds: int = 900
    past_due_recovery_interval_seconds: int = 600
    lock_cleanup_interval_seconds: int = 300

    enable_alerts: bool = False
    alert_webhook_url: str = ""


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        env_file: .env file to load first (default: search from cwd).
                  Variables already set in the environment win.
    """
    load_dotenv(env_file)

    defaults = Settings()
    return Settings(
        automation_db_path=os.getenv("AUTOMATION_DB_PATH", defaults.automation_db_path),
        work_queue_db_path=os.getenv("WORK_QUEUE_DB_PATH", defaults.work_queue_db_path),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        log_dir=os.getenv("LOG_DIR", defaults.log_dir),
        auto_scheduler_enabled=_get_env_bool(
            "AUTO_SCHEDULER_ENABLED", defaults.auto_scheduler_enabled
        ),
        stuck_job_recovery_enabled=_get_env_bool(
            "STUCK_JOB_RECOVERY_ENABLED", defaults.stuck_job_recovery_enabled
        ),
        past_due_recovery_enabled=_get_env_bool(
            "PAST_DUE_RECOVERY_ENABLED", defaults.past_due_recovery_enabled
        ),
        lock_cleanup_enabled=_get_env_bool(
            "LOCK_CLEANUP_ENABLED", defaults.lock_cleanup_enabled
        ),
        auto_scheduler_interval_seconds=_get_env_int(
            "AUTO_SCHEDULER_INTERVAL_SECONDS", defaults.auto_scheduler_interval_seconds
        ),
        stuck_job_recovery_interval_seconds=_get_env_int(
            "STUCK_JOB_RECOVERY_INTERVAL_SECONDS", defaults.stuck_job_recovery_interval_seconds
        ),
        past_due_recovery_interval_seconds=_get_env_int(
            "PAST_DUE_RECOVERY_INTERVAL_SECONDS", defaults.past_due_recovery_interval_seconds
        ),
        lock_cleanup_interval_seconds=_get_env_int(
            "LOCK_CLEANUP_INTERVAL_SECONDS", defaults.lock_cleanup_interval_seconds
        ),
        enable_alerts=_get_env_bool("ENABLE_ALERTS", defaults.enable_alerts),
        alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL", defaults.alert_webhook_url),
    )
