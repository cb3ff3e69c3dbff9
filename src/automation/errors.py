"""
Automation-specific exceptions.

Lock contention is never an exception: conditional updates report it as
a False / zero-rows result. These exceptions cover misuse and missing
records only.
"""


class AutomationError(Exception):
    """Base exception for all automation errors."""
    pass


class InvalidOperationError(AutomationError):
    """
    Raised when an operation violates a record invariant.

    Examples:
    - Unknown draft column in an update
    - Scheduling a draft that is no longer claimed
    """
    pass


class DraftNotFoundError(AutomationError):
    """Raised when a requested draft does not exist."""

    def __init__(self, draft_id: str):
        self.draft_id = draft_id
        super().__init__(f"Draft not found: {draft_id}")


class AutomationNotFoundError(AutomationError):
    """Raised when a requested automation does not exist."""

    def __init__(self, automation_id: str):
        self.automation_id = automation_id
        super().__init__(f"Automation not found: {automation_id}")


class UserNotFoundError(AutomationError):
    """Raised when a requested user does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class QueueError(AutomationError):
    """
    Raised by a work queue when a job cannot be enqueued or removed.

    Raised inside the scheduling transaction, it rolls the draft update back.
    """

    def __init__(self, job_key: str, reason: str):
        self.job_key = job_key
        self.reason = reason
        super().__init__(f"Queue operation failed for {job_key}: {reason}")
