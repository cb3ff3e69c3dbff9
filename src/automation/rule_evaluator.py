"""
Rule Evaluator for the auto-scheduler.

Decides which of an automation's schedule rules fire "now", in the owner's
timezone:
- fixed_time: fires in [target, target + 7 minutes) local time, never early
- fixed_interval: fires when interval_minutes have passed since the last
  run it triggered (or it never ran)
- daily_quota: fires while today's scheduled total is below the quota

Interval and quota state is derived from ExecutionLog rows only.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .entities import Automation, RuleType, ScheduleRule, utc_now
from .persistence import PersistenceAdapter


logger = logging.getLogger(__name__)


# Width of the fixed_time firing window. Must exceed the scheduler period
# (5 minutes) so every target time falls inside at least one sweep.
TIME_MATCH_WINDOW_MINUTES = 7

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def _to_minutes(hh_mm: str) -> int:
    hours, minutes = hh_mm.split(":")
    return int(hours) * 60 + int(minutes)


def is_time_match(current_time: str, target_time: str) -> bool:
    """
    Check whether `current_time` is inside the firing window of `target_time`.

    Both are "HH:MM". No wrap-around midnight.
    """
    diff = _to_minutes(current_time) - _to_minutes(target_time)
    return 0 <= diff < TIME_MATCH_WINDOW_MINUTES


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Get a ZoneInfo for an IANA name, falling back to UTC."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def calculate_schedule_count(rules: list[ScheduleRule]) -> int:
    """Number of drafts to schedule for a set of triggered rules."""
    count = 0
    for rule in rules:
        if rule.type == RuleType.FIXED_INTERVAL:
            count += rule.deviations_per_interval or 1
        else:
            count += 1
    return count


class RuleEvaluator:
    """Evaluates schedule rules against the current time and execution history."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.persistence = persistence
        self.clock = clock

    def evaluate(
        self,
        automation: Automation,
        now: Optional[datetime] = None,
    ) -> list[ScheduleRule]:
        """
        Get the automation's triggered rules, in priority order.

        Disabled rules are skipped even if loaded.
        """
        now = now or self.clock()
        tz = resolve_timezone(automation.user_timezone)
        local_now = now.astimezone(tz)
        current_time = local_now.strftime("%H:%M")
        current_day = WEEKDAY_NAMES[local_now.weekday()]

        triggered = []
        for rule in sorted(automation.schedule_rules, key=lambda r: r.priority):
            if not rule.enabled:
                continue

            if rule.days_of_week and current_day not in rule.days_of_week:
                continue

            if self._rule_fires(automation, rule, now, local_now, current_time):
                triggered.append(rule)

        if triggered:
            logger.debug(
                f"Automation {automation.automation_id}: "
                f"{len(triggered)} rule(s) triggered at {current_time} {current_day} ({tz.key})"
            )
        return triggered

    def _rule_fires(
        self,
        automation: Automation,
        rule: ScheduleRule,
        now: datetime,
        local_now: datetime,
        current_time: str,
    ) -> bool:
        if rule.type == RuleType.FIXED_TIME:
            if not rule.time_of_day:
                logger.warning(f"Rule {rule.rule_id} is fixed_time without time_of_day, skipping")
                return False
            return is_time_match(current_time, rule.time_of_day)

        if rule.type == RuleType.FIXED_INTERVAL:
            if not rule.interval_minutes:
                logger.warning(
                    f"Rule {rule.rule_id} is fixed_interval without interval_minutes, skipping"
                )
                return False
            last_execution = self.persistence.get_last_execution_for_rule(
                automation.automation_id, RuleType.FIXED_INTERVAL
            )
            if last_execution is None:
                return True
            return now - last_execution >= timedelta(minutes=rule.interval_minutes)

        if rule.type == RuleType.DAILY_QUOTA:
            if rule.daily_quota is None:
                logger.warning(f"Rule {rule.rule_id} is daily_quota without daily_quota, skipping")
                return False
            local_midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
            scheduled_today = self.persistence.sum_scheduled_since(
                automation.automation_id,
                RuleType.DAILY_QUOTA,
                local_midnight.astimezone(timezone.utc),
            )
            return scheduled_today < rule.daily_quota

        logger.warning(f"Rule {rule.rule_id} has unknown type {rule.type}, skipping")
        return False
