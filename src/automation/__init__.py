"""
Publish Automation Core Module.

Schedules user-authored automation rules that select draft content and hand
it to the publish queue, and recovers jobs that got stuck or lost:
- RuleEvaluator / DraftSelector / apply_default_values
- AutoScheduler (orchestrator)
- StuckJobRecovery / PastDueRecovery / LockCleanup (recovery sweeps)
- ErrorCategorizer (error taxonomy and retry policy)
"""

from .entities import (
    DraftStatus,
    RuleType,
    SelectionMethod,
    UploadMode,
    User,
    Automation,
    ScheduleRule,
    DefaultValue,
    ExecutionLog,
    Draft,
    DraftFile,
)
from .errors import (
    AutomationError,
    InvalidOperationError,
    DraftNotFoundError,
    AutomationNotFoundError,
    UserNotFoundError,
    QueueError,
)
from .persistence import PersistenceAdapter
from .work_queue import (
    JobState,
    QueueJob,
    WorkQueue,
    SqliteWorkQueue,
    job_key_for_draft,
    schedule_publish,
)
from .error_categorizer import (
    ErrorCategory,
    RetryStrategy,
    ErrorContext,
    CategorizedError,
    ErrorCategorizer,
)
from .rule_evaluator import RuleEvaluator, is_time_match, calculate_schedule_count
from .draft_selector import DraftSelector
from .default_values import is_empty, apply_default_values
from .auto_scheduler import AutoScheduler
from .stuck_job_recovery import (
    GhostPublish,
    PartialPublish,
    FailedUpload,
    DraftRecoveryState,
    classify_recovery_state,
    StuckJobRecovery,
)
from .past_due_recovery import PastDueRecovery
from .lock_cleanup import LockCleanup
from .sweeps import PeriodicSweep, SweepState
from .service import AutomationService

__all__ = [
    # Entities
    "DraftStatus",
    "RuleType",
    "SelectionMethod",
    "UploadMode",
    "User",
    "Automation",
    "ScheduleRule",
    "DefaultValue",
    "ExecutionLog",
    "Draft",
    "DraftFile",
    # Errors
    "AutomationError",
    "InvalidOperationError",
    "DraftNotFoundError",
    "AutomationNotFoundError",
    "UserNotFoundError",
    "QueueError",
    # Components
    "PersistenceAdapter",
    "JobState",
    "QueueJob",
    "WorkQueue",
    "SqliteWorkQueue",
    "job_key_for_draft",
    "schedule_publish",
    "ErrorCategory",
    "RetryStrategy",
    "ErrorContext",
    "CategorizedError",
    "ErrorCategorizer",
    "RuleEvaluator",
    "is_time_match",
    "calculate_schedule_count",
    "DraftSelector",
    "is_empty",
    "apply_default_values",
    "AutoScheduler",
    "GhostPublish",
    "PartialPublish",
    "FailedUpload",
    "DraftRecoveryState",
    "classify_recovery_state",
    "StuckJobRecovery",
    "PastDueRecovery",
    "LockCleanup",
    "PeriodicSweep",
    "SweepState",
    # Service
    "AutomationService",
]
