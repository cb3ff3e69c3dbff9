"""
Default Value Applier.

Merges an automation's configured field defaults into a draft it is about
to schedule, then enforces the sale-queue protections and the stash-only
default. Produces a column -> value dict; nothing is written here.
"""

import logging
from typing import Any

from .entities import Automation, Draft
from .persistence import DRAFT_COLUMNS


logger = logging.getLogger(__name__)


# Highest display resolution tier that still supports watermarks
SALE_QUEUE_DISPLAY_RESOLUTION = 8

# Columns owned by the scheduler itself; a default may never set them
PROTECTED_COLUMNS = {
    "status",
    "execution_lock_id",
    "execution_locked_at",
    "execution_version",
    "retry_count",
    "deviation_id",
    "stash_item_id",
    "scheduled_at",
    "actual_publish_at",
    "jitter_seconds",
    "automation_id",
    "error_message",
    "published_at",
    "post_count_incremented",
}

DEFAULTABLE_FIELDS = DRAFT_COLUMNS - PROTECTED_COLUMNS


def is_empty(value: Any) -> bool:
    """
    Whether a draft value counts as unset.

    False and 0 count as empty so a default can override a column default.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    if isinstance(value, bool):
        return value is False
    if isinstance(value, (int, float)):
        return value == 0
    return False


def apply_default_values(draft: Draft, automation: Automation) -> dict[str, Any]:
    """
    Compute the field updates an automation applies to a draft.

    Order:
    1. User defaults (always, or only over empty values when apply_if_empty)
    2. Sale-queue protections, when auto-add is on with a preset
    3. stash_only from the automation when the draft has none

    Returns:
        Column -> value updates
    """
    updates: dict[str, Any] = {}

    for default in automation.default_values:
        if default.field_name not in DEFAULTABLE_FIELDS:
            logger.warning(
                f"Automation {automation.automation_id}: ignoring default for "
                f"unknown field {default.field_name!r}"
            )
            continue

        if default.apply_if_empty and not is_empty(draft.get_field(default.field_name)):
            continue

        updates[default.field_name] = default.value

    if automation.auto_add_to_sale_queue and automation.sale_queue_preset_id:
        resolution = updates.get("display_resolution", draft.display_resolution)
        if not resolution:
            updates["display_resolution"] = SALE_QUEUE_DISPLAY_RESOLUTION
        updates["add_watermark"] = True
        updates["allow_free_download"] = False

    if draft.stash_only is None:
        updates["stash_only"] = automation.stash_only_by_default

    return updates
