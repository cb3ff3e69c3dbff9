"""
Automation Domain Entities.

Records shared by the auto-scheduler and the recovery sweepers:
- User: owner of drafts and automations (timezone, post count)
- Automation: scheduling configuration + execution lock fields
- ScheduleRule: temporal trigger belonging to an Automation
- DefaultValue: field default applied to drafts an Automation schedules
- ExecutionLog: append-only audit of scheduler runs (also rule state)
- Draft: the unit of work claimed, scheduled and published
- DraftFile: file attached to a Draft

Timestamps are timezone-aware UTC datetimes in memory and fixed-width
ISO-8601 strings in storage, so SQL string comparison is chronological.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class DraftStatus(str, Enum):
    """
    Draft lifecycle status.

    - DRAFT: Created by the CRUD layer, selectable by automations
    - SCHEDULED: Claimed and queued for publishing
    - UPLOADING: Legacy in-flight status (publisher before execution locks)
    - PUBLISHING: In-flight in the external publish worker
    - PUBLISHED: Terminal success
    - FAILED: Terminal failure recorded by the publish worker
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    UPLOADING = "uploading"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


class RuleType(str, Enum):
    """Schedule rule trigger types."""

    FIXED_TIME = "fixed_time"
    FIXED_INTERVAL = "fixed_interval"
    DAILY_QUOTA = "daily_quota"


class SelectionMethod(str, Enum):
    """How an automation picks drafts from the pool."""

    RANDOM = "random"
    FIFO = "fifo"
    LIFO = "lifo"


class UploadMode(str, Enum):
    """Whether a multi-file draft publishes as one post or one post per file."""

    SINGLE = "single"
    MULTIPLE = "multiple"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to the fixed-width storage format."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a storage timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class User:
    """Owner of drafts and automations."""

    user_id: str
    timezone: str = "UTC"
    post_count: int = 0

    @classmethod
    def create(cls, timezone: str = "UTC") -> "User":
        """Create a new User with generated ID."""
        return cls(user_id=generate_uuid(), timezone=timezone)


@dataclass
class ScheduleRule:
    """
    Temporal trigger of an Automation.

    Only the fields relevant to `type` are meaningful:
    - fixed_time: time_of_day ("HH:MM" in the owner's timezone)
    - fixed_interval: interval_minutes, deviations_per_interval
    - daily_quota: daily_quota
    days_of_week optionally restricts any type to lowercase weekday names.
    """

    rule_id: str
    automation_id: str
    type: RuleType
    time_of_day: Optional[str] = None
    days_of_week: Optional[list[str]] = None
    interval_minutes: Optional[int] = None
    deviations_per_interval: Optional[int] = None
    daily_quota: Optional[int] = None
    priority: int = 0
    enabled: bool = True

    @classmethod
    def create(
        cls,
        automation_id: str,
        type: RuleType,
        time_of_day: Optional[str] = None,
        days_of_week: Optional[list[str]] = None,
        interval_minutes: Optional[int] = None,
        deviations_per_interval: Optional[int] = None,
        daily_quota: Optional[int] = None,
        priority: int = 0,
        enabled: bool = True,
    ) -> "ScheduleRule":
        """Create a new ScheduleRule with generated ID."""
        return cls(
            rule_id=generate_uuid(),
            automation_id=automation_id,
            type=RuleType(type),
            time_of_day=time_of_day,
            days_of_week=days_of_week,
            interval_minutes=interval_minutes,
            deviations_per_interval=deviations_per_interval,
            daily_quota=daily_quota,
            priority=priority,
            enabled=enabled,
        )


@dataclass
class DefaultValue:
    """Field default merged into drafts scheduled by an Automation."""

    default_id: str
    automation_id: str
    field_name: str
    value: Any
    apply_if_empty: bool = False

    @classmethod
    def create(
        cls,
        automation_id: str,
        field_name: str,
        value: Any,
        apply_if_empty: bool = False,
    ) -> "DefaultValue":
        """Create a new DefaultValue with generated ID."""
        return cls(
            default_id=generate_uuid(),
            automation_id=automation_id,
            field_name=field_name,
            value=value,
            apply_if_empty=apply_if_empty,
        )


@dataclass
class Automation:
    """
    User-authored scheduling configuration.

    is_executing / last_execution_lock form a row-level execution lock:
    at most one sweep may process an automation at a time, and a lock
    older than the stale timeout may be reclaimed.

    schedule_rules, default_values and user_timezone are loaded alongside
    the row and are not columns of the automations table.
    """

    automation_id: str
    user_id: str
    name: str = ""
    enabled: bool = True
    draft_selection_method: SelectionMethod = SelectionMethod.FIFO
    jitter_min_seconds: int = 0
    jitter_max_seconds: int = 300
    stash_only_by_default: bool = False
    auto_add_to_sale_queue: bool = False
    sale_queue_preset_id: Optional[str] = None
    is_executing: bool = False
    last_execution_lock: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    schedule_rules: list[ScheduleRule] = field(default_factory=list)
    default_values: list[DefaultValue] = field(default_factory=list)
    user_timezone: str = "UTC"

    @classmethod
    def create(
        cls,
        user_id: str,
        name: str = "",
        enabled: bool = True,
        draft_selection_method: SelectionMethod = SelectionMethod.FIFO,
        jitter_min_seconds: int = 0,
        jitter_max_seconds: int = 300,
        stash_only_by_default: bool = False,
        auto_add_to_sale_queue: bool = False,
        sale_queue_preset_id: Optional[str] = None,
    ) -> "Automation":
        """Create a new Automation with generated ID."""
        return cls(
            automation_id=generate_uuid(),
            user_id=user_id,
            name=name,
            enabled=enabled,
            draft_selection_method=SelectionMethod(draft_selection_method),
            jitter_min_seconds=jitter_min_seconds,
            jitter_max_seconds=jitter_max_seconds,
            stash_only_by_default=stash_only_by_default,
            auto_add_to_sale_queue=auto_add_to_sale_queue,
            sale_queue_preset_id=sale_queue_preset_id,
        )


@dataclass
class ExecutionLog:
    """
    One scheduler run for one automation.

    Append-only. fixed_interval and daily_quota rules derive their state
    from these rows (latest executed_at, sum of scheduled_count).
    """

    log_id: str
    automation_id: str
    scheduled_count: int
    error_message: Optional[str] = None
    triggered_by_rule_type: Optional[RuleType] = None
    executed_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        automation_id: str,
        scheduled_count: int,
        error_message: Optional[str] = None,
        triggered_by_rule_type: Optional[RuleType] = None,
        executed_at: Optional[datetime] = None,
    ) -> "ExecutionLog":
        """Create a new ExecutionLog with generated ID."""
        return cls(
            log_id=generate_uuid(),
            automation_id=automation_id,
            scheduled_count=scheduled_count,
            error_message=error_message,
            triggered_by_rule_type=(
                RuleType(triggered_by_rule_type) if triggered_by_rule_type else None
            ),
            executed_at=executed_at or utc_now(),
        )


@dataclass
class DraftFile:
    """File attached to a draft."""

    file_id: str
    draft_id: str
    storage_key: str
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, draft_id: str, storage_key: str) -> "DraftFile":
        return cls(file_id=generate_uuid(), draft_id=draft_id, storage_key=storage_key)


@dataclass
class Draft:
    """
    Content record moving through draft → scheduled → publishing → published.

    Concurrency fields:
    - execution_version: bumped by every successful claim (optimistic lock)
    - execution_lock_id / execution_locked_at: set by the publish worker
      while a job is in flight
    - post_count_incremented: guard making post counting idempotent

    External ids:
    - stash_item_id: set once files are uploaded to the platform
    - deviation_id: set once the platform has published the item
    """

    draft_id: str
    user_id: str
    title: str = ""
    status: DraftStatus = DraftStatus.DRAFT
    execution_lock_id: Optional[str] = None
    execution_locked_at: Optional[datetime] = None
    execution_version: int = 0
    retry_count: int = 0
    deviation_id: Optional[str] = None
    stash_item_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    actual_publish_at: Optional[datetime] = None
    jitter_seconds: int = 0
    upload_mode: UploadMode = UploadMode.SINGLE
    automation_id: Optional[str] = None
    error_message: Optional[str] = None
    published_at: Optional[datetime] = None
    post_count_incremented: bool = False
    description: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    is_mature: bool = False
    mature_level: Optional[str] = None
    display_resolution: int = 0
    add_watermark: bool = False
    allow_free_download: bool = False
    allow_comments: bool = True
    stash_only: Optional[bool] = None
    gallery_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        user_id: str,
        title: str = "",
        upload_mode: UploadMode = UploadMode.SINGLE,
        **fields: Any,
    ) -> "Draft":
        """Create a new DRAFT with generated ID."""
        now = utc_now()
        return cls(
            draft_id=generate_uuid(),
            user_id=user_id,
            title=title,
            upload_mode=UploadMode(upload_mode),
            created_at=fields.pop("created_at", now),
            updated_at=fields.pop("updated_at", now),
            **fields,
        )

    def get_field(self, name: str) -> Any:
        """Read a content field by column name."""
        return getattr(self, name, None)
