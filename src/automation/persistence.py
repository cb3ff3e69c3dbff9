"""
Persistence Adapter for the automation core.

SQLite record store shared by the auto-scheduler and the recovery sweepers.
Several processes may run the sweeps against the same database, so every
piece of cross-process coordination is a conditional UPDATE whose rowcount
tells the caller whether it won:

- Automation execution lock (is_executing / last_execution_lock)
- Draft claim (execution_version compare-and-swap)
- Post count guard (post_count_incremented flag)

Provides:
- CRUD for users, automations, rules, default values, drafts, files
- Append/query helpers for execution logs
- Recovery query helpers (stuck drafts, past-due drafts, stale locks)
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .entities import (
    Automation,
    DefaultValue,
    Draft,
    DraftFile,
    DraftStatus,
    ExecutionLog,
    RuleType,
    ScheduleRule,
    SelectionMethod,
    UploadMode,
    User,
    from_iso,
    to_iso,
)
from .errors import (
    AutomationNotFoundError,
    DraftNotFoundError,
    InvalidOperationError,
    UserNotFoundError,
)


# Draft columns that update_draft() / schedule_draft() may write
DRAFT_COLUMNS = {
    "title",
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
    "upload_mode",
    "automation_id",
    "error_message",
    "published_at",
    "post_count_incremented",
    "description",
    "tags",
    "is_mature",
    "mature_level",
    "display_resolution",
    "add_watermark",
    "allow_free_download",
    "allow_comments",
    "stash_only",
    "gallery_ids",
}

_JSON_COLUMNS = {"tags", "gallery_ids"}
_BOOL_COLUMNS = {
    "post_count_incremented",
    "is_mature",
    "add_watermark",
    "allow_free_download",
    "allow_comments",
    "stash_only",
}


def _encode_value(column: str, value: Any) -> Any:
    """Convert a Python value into its SQLite representation."""
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(list(value))
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    if isinstance(value, datetime):
        return to_iso(value)
    if hasattr(value, "value"):
        return value.value
    return value


class PersistenceAdapter:
    """
    SQLite-based record store for the automation core.

    - Abstracts SQLite storage
    - Exposes conditional updates as boolean / count results
    - Does NOT contain scheduling or recovery decisions
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file.
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    post_count INTEGER NOT NULL DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS automations (
                    automation_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    enabled INTEGER NOT NULL DEFAULT 1,
                    draft_selection_method TEXT NOT NULL DEFAULT 'fifo',
                    jitter_min_seconds INTEGER NOT NULL DEFAULT 0,
                    jitter_max_seconds INTEGER NOT NULL DEFAULT 300,
                    stash_only_by_default INTEGER NOT NULL DEFAULT 0,
                    auto_add_to_sale_queue INTEGER NOT NULL DEFAULT 0,
                    sale_queue_preset_id TEXT,
                    is_executing INTEGER NOT NULL DEFAULT 0,
                    last_execution_lock TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_schedule_rules (
                    rule_id TEXT PRIMARY KEY,
                    automation_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    time_of_day TEXT,
                    days_of_week TEXT,
                    interval_minutes INTEGER,
                    deviations_per_interval INTEGER,
                    daily_quota INTEGER,
                    priority INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    FOREIGN KEY (automation_id) REFERENCES automations(automation_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_default_values (
                    default_id TEXT PRIMARY KEY,
                    automation_id TEXT NOT NULL,
                    field_name TEXT NOT NULL,
                    value TEXT,
                    apply_if_empty INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (automation_id) REFERENCES automations(automation_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_execution_logs (
                    log_id TEXT PRIMARY KEY,
                    automation_id TEXT NOT NULL,
                    scheduled_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    triggered_by_rule_type TEXT,
                    executed_at TEXT NOT NULL,
                    FOREIGN KEY (automation_id) REFERENCES automations(automation_id)
                )
            """)

            # Rule state lookups (latest log per rule type, today's sum)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_execution_logs_rule
                ON automation_execution_logs (automation_id, triggered_by_rule_type, executed_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS drafts (
                    draft_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'draft',
                    execution_lock_id TEXT,
                    execution_locked_at TEXT,
                    execution_version INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    deviation_id TEXT,
                    stash_item_id TEXT,
                    scheduled_at TEXT,
                    actual_publish_at TEXT,
                    jitter_seconds INTEGER NOT NULL DEFAULT 0,
                    upload_mode TEXT NOT NULL DEFAULT 'single',
                    automation_id TEXT,
                    error_message TEXT,
                    published_at TEXT,
                    post_count_incremented INTEGER NOT NULL DEFAULT 0,
                    description TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    is_mature INTEGER NOT NULL DEFAULT 0,
                    mature_level TEXT,
                    display_resolution INTEGER NOT NULL DEFAULT 0,
                    add_watermark INTEGER NOT NULL DEFAULT 0,
                    allow_free_download INTEGER NOT NULL DEFAULT 0,
                    allow_comments INTEGER NOT NULL DEFAULT 1,
                    stash_only INTEGER,
                    gallery_ids TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """)

            # Candidate selection (user pool ordered by creation)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_drafts_candidates
                ON drafts (user_id, status, scheduled_at, created_at)
            """)

            # Past-due scan
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_drafts_past_due
                ON drafts (status, actual_publish_at)
            """)

            # Stuck scan
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_drafts_execution_lock
                ON drafts (execution_lock_id, execution_locked_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS draft_files (
                    file_id TEXT PRIMARY KEY,
                    draft_id TEXT NOT NULL,
                    storage_key TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (draft_id) REFERENCES drafts(draft_id)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_draft_files_draft_id
                ON draft_files (draft_id)
            """)

    # =========================================================================
    # User Operations
    # =========================================================================

    def create_user(self, user: User) -> User:
        """Create a new user."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO users (user_id, timezone, post_count) VALUES (?, ?, ?)",
                (user.user_id, user.timezone, user.post_count),
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        """Get a user by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()

        if row is None:
            return None

        return User(
            user_id=row["user_id"],
            timezone=row["timezone"] or "UTC",
            post_count=row["post_count"],
        )

    # =========================================================================
    # Automation Operations
    # =========================================================================

    def create_automation(self, automation: Automation) -> Automation:
        """Create a new automation (rules and defaults are created separately)."""
        if self.get_user(automation.user_id) is None:
            raise UserNotFoundError(automation.user_id)

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO automations
                (automation_id, user_id, name, enabled, draft_selection_method,
                 jitter_min_seconds, jitter_max_seconds, stash_only_by_default,
                 auto_add_to_sale_queue, sale_queue_preset_id, is_executing,
                 last_execution_lock, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    automation.automation_id,
                    automation.user_id,
                    automation.name,
                    1 if automation.enabled else 0,
                    automation.draft_selection_method.value,
                    automation.jitter_min_seconds,
                    automation.jitter_max_seconds,
                    1 if automation.stash_only_by_default else 0,
                    1 if automation.auto_add_to_sale_queue else 0,
                    automation.sale_queue_preset_id,
                    1 if automation.is_executing else 0,
                    to_iso(automation.last_execution_lock),
                    to_iso(automation.created_at),
                    to_iso(automation.updated_at),
                ),
            )
        return automation

    def _row_to_automation(self, row: sqlite3.Row) -> Automation:
        """Convert a joined automations/users row to an Automation."""
        return Automation(
            automation_id=row["automation_id"],
            user_id=row["user_id"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            draft_selection_method=SelectionMethod(row["draft_selection_method"]),
            jitter_min_seconds=row["jitter_min_seconds"],
            jitter_max_seconds=row["jitter_max_seconds"],
            stash_only_by_default=bool(row["stash_only_by_default"]),
            auto_add_to_sale_queue=bool(row["auto_add_to_sale_queue"]),
            sale_queue_preset_id=row["sale_queue_preset_id"],
            is_executing=bool(row["is_executing"]),
            last_execution_lock=from_iso(row["last_execution_lock"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            user_timezone=row["timezone"] or "UTC",
        )

    def get_automation(self, automation_id: str) -> Optional[Automation]:
        """Get an automation with its enabled rules, default values and owner timezone."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT a.*, u.timezone FROM automations a
                JOIN users u ON u.user_id = a.user_id
                WHERE a.automation_id = ?
                """,
                (automation_id,),
            ).fetchone()

        if row is None:
            return None

        automation = self._row_to_automation(row)
        automation.schedule_rules = self.list_schedule_rules(automation_id)
        automation.default_values = self.list_default_values(automation_id)
        return automation

    def list_enabled_automations(self) -> list[Automation]:
        """
        List enabled automations with relations loaded.

        Rules are restricted to enabled ones, ordered by priority ascending.
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT a.*, u.timezone FROM automations a
                JOIN users u ON u.user_id = a.user_id
                WHERE a.enabled = 1
                ORDER BY a.created_at ASC
                """
            ).fetchall()

        automations = []
        for row in rows:
            automation = self._row_to_automation(row)
            automation.schedule_rules = self.list_schedule_rules(automation.automation_id)
            automation.default_values = self.list_default_values(automation.automation_id)
            automations.append(automation)
        return automations

    def try_acquire_automation_lock(
        self,
        automation_id: str,
        now: datetime,
        stale_after: timedelta,
    ) -> bool:
        """
        Compare-and-swap the automation execution lock.

        Succeeds when the automation is idle, has no lock timestamp, or its
        lock is older than `stale_after` (abandoned by a crashed sweep).

        Returns:
            True if this caller now holds the lock
        """
        cutoff = now - stale_after
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE automations
                SET is_executing = 1, last_execution_lock = ?, updated_at = ?
                WHERE automation_id = ?
                  AND (is_executing = 0
                       OR last_execution_lock IS NULL
                       OR last_execution_lock < ?)
                """,
                (to_iso(now), to_iso(now), automation_id, to_iso(cutoff)),
            )
            return cursor.rowcount > 0

    def release_automation_lock(self, automation_id: str) -> None:
        """Release the automation execution lock unconditionally."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE automations
                SET is_executing = 0, last_execution_lock = NULL
                WHERE automation_id = ?
                """,
                (automation_id,),
            )

    # =========================================================================
    # Schedule Rule / Default Value Operations
    # =========================================================================

    def _require_automation(self, automation_id: str) -> None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM automations WHERE automation_id = ?",
                (automation_id,),
            ).fetchone()
        if row is None:
            raise AutomationNotFoundError(automation_id)

    def create_schedule_rule(self, rule: ScheduleRule) -> ScheduleRule:
        """Create a new schedule rule."""
        self._require_automation(rule.automation_id)

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO automation_schedule_rules
                (rule_id, automation_id, type, time_of_day, days_of_week,
                 interval_minutes, deviations_per_interval, daily_quota, priority, enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.rule_id,
                    rule.automation_id,
                    rule.type.value,
                    rule.time_of_day,
                    json.dumps(rule.days_of_week) if rule.days_of_week is not None else None,
                    rule.interval_minutes,
                    rule.deviations_per_interval,
                    rule.daily_quota,
                    rule.priority,
                    1 if rule.enabled else 0,
                ),
            )
        return rule

    def list_schedule_rules(
        self,
        automation_id: str,
        enabled_only: bool = True,
    ) -> list[ScheduleRule]:
        """List rules of an automation in ascending priority order."""
        query = "SELECT * FROM automation_schedule_rules WHERE automation_id = ?"
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY priority ASC, rowid ASC"

        with self._connection() as conn:
            rows = conn.execute(query, (automation_id,)).fetchall()

        return [
            ScheduleRule(
                rule_id=row["rule_id"],
                automation_id=row["automation_id"],
                type=RuleType(row["type"]),
                time_of_day=row["time_of_day"],
                days_of_week=json.loads(row["days_of_week"]) if row["days_of_week"] else None,
                interval_minutes=row["interval_minutes"],
                deviations_per_interval=row["deviations_per_interval"],
                daily_quota=row["daily_quota"],
                priority=row["priority"],
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    def create_default_value(self, default_value: DefaultValue) -> DefaultValue:
        """Create a new default value."""
        self._require_automation(default_value.automation_id)

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO automation_default_values
                (default_id, automation_id, field_name, value, apply_if_empty)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    default_value.default_id,
                    default_value.automation_id,
                    default_value.field_name,
                    json.dumps(default_value.value),
                    1 if default_value.apply_if_empty else 0,
                ),
            )
        return default_value

    def list_default_values(self, automation_id: str) -> list[DefaultValue]:
        """List default values of an automation in creation order."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM automation_default_values
                WHERE automation_id = ?
                ORDER BY rowid ASC
                """,
                (automation_id,),
            ).fetchall()

        return [
            DefaultValue(
                default_id=row["default_id"],
                automation_id=row["automation_id"],
                field_name=row["field_name"],
                value=json.loads(row["value"]) if row["value"] is not None else None,
                apply_if_empty=bool(row["apply_if_empty"]),
            )
            for row in rows
        ]

    # =========================================================================
    # Execution Log Operations
    # =========================================================================

    def create_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        """Append an execution log row."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO automation_execution_logs
                (log_id, automation_id, scheduled_count, error_message,
                 triggered_by_rule_type, executed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    log.log_id,
                    log.automation_id,
                    log.scheduled_count,
                    log.error_message,
                    log.triggered_by_rule_type.value if log.triggered_by_rule_type else None,
                    to_iso(log.executed_at),
                ),
            )
        return log

    def list_execution_logs(self, automation_id: str, limit: int = 100) -> list[ExecutionLog]:
        """List execution logs of an automation, newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM automation_execution_logs
                WHERE automation_id = ?
                ORDER BY executed_at DESC
                LIMIT ?
                """,
                (automation_id, limit),
            ).fetchall()

        return [
            ExecutionLog(
                log_id=row["log_id"],
                automation_id=row["automation_id"],
                scheduled_count=row["scheduled_count"],
                error_message=row["error_message"],
                triggered_by_rule_type=(
                    RuleType(row["triggered_by_rule_type"])
                    if row["triggered_by_rule_type"] else None
                ),
                executed_at=from_iso(row["executed_at"]),
            )
            for row in rows
        ]

    def get_last_execution_for_rule(
        self,
        automation_id: str,
        rule_type: RuleType,
    ) -> Optional[datetime]:
        """Get executed_at of the most recent log triggered by `rule_type`."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT MAX(executed_at) AS last_executed_at
                FROM automation_execution_logs
                WHERE automation_id = ? AND triggered_by_rule_type = ?
                """,
                (automation_id, RuleType(rule_type).value),
            ).fetchone()

        return from_iso(row["last_executed_at"])

    def sum_scheduled_since(
        self,
        automation_id: str,
        rule_type: RuleType,
        since: datetime,
    ) -> int:
        """Sum scheduled_count of logs triggered by `rule_type` at or after `since`."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(scheduled_count), 0) AS total
                FROM automation_execution_logs
                WHERE automation_id = ? AND triggered_by_rule_type = ? AND executed_at >= ?
                """,
                (automation_id, RuleType(rule_type).value, to_iso(since)),
            ).fetchone()

        return int(row["total"])

    # =========================================================================
    # Draft Operations
    # =========================================================================

    def create_draft(self, draft: Draft) -> Draft:
        """Create a new draft."""
        columns = ["draft_id", "user_id", "created_at", "updated_at"] + sorted(DRAFT_COLUMNS)
        values = [
            draft.draft_id,
            draft.user_id,
            to_iso(draft.created_at),
            to_iso(draft.updated_at),
        ] + [_encode_value(column, getattr(draft, column)) for column in sorted(DRAFT_COLUMNS)]

        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO drafts ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
        return draft

    def add_draft_file(self, draft_file: DraftFile) -> DraftFile:
        """Attach a file to a draft."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO draft_files (file_id, draft_id, storage_key, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    draft_file.file_id,
                    draft_file.draft_id,
                    draft_file.storage_key,
                    to_iso(draft_file.created_at),
                ),
            )
        return draft_file

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        """Get a draft by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM drafts WHERE draft_id = ?",
                (draft_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_draft(row)

    def _row_to_draft(self, row: sqlite3.Row) -> Draft:
        """Convert a database row to a Draft."""
        return Draft(
            draft_id=row["draft_id"],
            user_id=row["user_id"],
            title=row["title"],
            status=DraftStatus(row["status"]),
            execution_lock_id=row["execution_lock_id"],
            execution_locked_at=from_iso(row["execution_locked_at"]),
            execution_version=row["execution_version"],
            retry_count=row["retry_count"],
            deviation_id=row["deviation_id"],
            stash_item_id=row["stash_item_id"],
            scheduled_at=from_iso(row["scheduled_at"]),
            actual_publish_at=from_iso(row["actual_publish_at"]),
            jitter_seconds=row["jitter_seconds"],
            upload_mode=UploadMode(row["upload_mode"]),
            automation_id=row["automation_id"],
            error_message=row["error_message"],
            published_at=from_iso(row["published_at"]),
            post_count_incremented=bool(row["post_count_incremented"]),
            description=row["description"],
            tags=json.loads(row["tags"]),
            is_mature=bool(row["is_mature"]),
            mature_level=row["mature_level"],
            display_resolution=row["display_resolution"],
            add_watermark=bool(row["add_watermark"]),
            allow_free_download=bool(row["allow_free_download"]),
            allow_comments=bool(row["allow_comments"]),
            stash_only=bool(row["stash_only"]) if row["stash_only"] is not None else None,
            gallery_ids=json.loads(row["gallery_ids"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def _build_draft_updates(self, fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
        """Build SET clauses for a draft update, rejecting unknown columns."""
        unknown = set(fields) - DRAFT_COLUMNS
        if unknown:
            raise InvalidOperationError(f"Unknown draft fields: {', '.join(sorted(unknown))}")

        updates = []
        values = []
        for column, value in fields.items():
            updates.append(f"{column} = ?")
            values.append(_encode_value(column, value))
        return updates, values

    def update_draft(self, draft_id: str, updated_at: datetime, **fields: Any) -> Draft:
        """
        Update draft columns unconditionally.

        Used by recovery paths that own the row after releasing its lock.

        Raises:
            DraftNotFoundError: If draft doesn't exist
            InvalidOperationError: If a field is not a draft column
        """
        updates, values = self._build_draft_updates(fields)
        updates.append("updated_at = ?")
        values.append(to_iso(updated_at))
        values.append(draft_id)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE drafts SET {', '.join(updates)} WHERE draft_id = ?",
                values,
            )
            if cursor.rowcount == 0:
                raise DraftNotFoundError(draft_id)

        return self.get_draft(draft_id)

    def list_draft_candidates(
        self,
        user_id: str,
        newest_first: Optional[bool],
        limit: int,
    ) -> list[Draft]:
        """
        List drafts the scheduler may claim for a user.

        Candidates are DRAFT status, not yet claimed (scheduled_at NULL) and
        have at least one attached file.

        Args:
            user_id: Owner of the pool
            newest_first: True for LIFO, False for FIFO, None for unordered
            limit: Maximum rows
        """
        query = """
            SELECT d.* FROM drafts d
            WHERE d.user_id = ?
              AND d.status = ?
              AND d.scheduled_at IS NULL
              AND EXISTS (SELECT 1 FROM draft_files f WHERE f.draft_id = d.draft_id)
        """
        if newest_first is True:
            query += " ORDER BY d.created_at DESC"
        elif newest_first is False:
            query += " ORDER BY d.created_at ASC"
        query += " LIMIT ?"

        with self._connection() as conn:
            rows = conn.execute(
                query,
                (user_id, DraftStatus.DRAFT.value, limit),
            ).fetchall()

        return [self._row_to_draft(row) for row in rows]

    def claim_draft(
        self,
        draft_id: str,
        expected_version: int,
        claimed_at: datetime,
    ) -> bool:
        """
        Atomically claim a draft with an optimistic version check.

        Sets scheduled_at as the claim marker and increments
        execution_version, only if the row still has the version the caller
        read and is still an unclaimed DRAFT.

        Returns:
            True if this caller won the claim, False if another process did
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE drafts
                SET scheduled_at = ?, execution_version = execution_version + 1, updated_at = ?
                WHERE draft_id = ?
                  AND execution_version = ?
                  AND status = ?
                  AND scheduled_at IS NULL
                """,
                (
                    to_iso(claimed_at),
                    to_iso(claimed_at),
                    draft_id,
                    expected_version,
                    DraftStatus.DRAFT.value,
                ),
            )
            return cursor.rowcount > 0

    def release_claim(self, draft_id: str, claimed_version: int) -> bool:
        """
        Return a claimed but unscheduled draft to the pool.

        Only applies while the draft is still a DRAFT at the version the
        claim produced, so a concurrent update is never overwritten.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE drafts
                SET scheduled_at = NULL
                WHERE draft_id = ? AND execution_version = ? AND status = ?
                """,
                (draft_id, claimed_version, DraftStatus.DRAFT.value),
            )
            return cursor.rowcount > 0

    def schedule_draft(
        self,
        draft_id: str,
        claimed_version: int,
        fields: dict[str, Any],
        enqueue: Callable[[], None],
        updated_at: datetime,
    ) -> None:
        """
        Mark a claimed draft SCHEDULED and enqueue it in one transaction.

        `enqueue` runs after the row update but before commit: if it raises,
        the draft update is rolled back and the exception propagates, so a
        draft is never left marked scheduled without a queued job.

        Raises:
            InvalidOperationError: If the draft is no longer the claimed DRAFT
        """
        updates, values = self._build_draft_updates(
            {**fields, "status": DraftStatus.SCHEDULED}
        )
        updates.append("updated_at = ?")
        values.append(to_iso(updated_at))
        values.extend([draft_id, claimed_version, DraftStatus.DRAFT.value])

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE drafts SET {', '.join(updates)}
                WHERE draft_id = ? AND execution_version = ? AND status = ?
                """,
                values,
            )
            if cursor.rowcount == 0:
                raise InvalidOperationError(
                    f"Draft {draft_id} is no longer claimed at version {claimed_version}"
                )

            enqueue()

    # =========================================================================
    # Recovery Query Helpers
    # =========================================================================

    def find_stuck_drafts(self, cutoff: datetime, limit: int) -> list[Draft]:
        """
        Find drafts whose in-flight state has not advanced since `cutoff`.

        Matches an execution lock older than the cutoff, or a legacy
        UPLOADING / PUBLISHING status not updated since the cutoff.
        Oldest locks first (rows without a lock last), then by updated_at.
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM drafts
                WHERE (execution_lock_id IS NOT NULL AND execution_locked_at < ?)
                   OR (status IN (?, ?) AND updated_at < ?)
                ORDER BY execution_locked_at IS NULL, execution_locked_at ASC, updated_at ASC
                LIMIT ?
                """,
                (
                    to_iso(cutoff),
                    DraftStatus.UPLOADING.value,
                    DraftStatus.PUBLISHING.value,
                    to_iso(cutoff),
                    limit,
                ),
            ).fetchall()

        return [self._row_to_draft(row) for row in rows]

    def release_execution_lock(self, draft_id: str, updated_at: datetime) -> None:
        """Clear a draft's execution lock. Idempotent."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE drafts
                SET execution_lock_id = NULL, execution_locked_at = NULL, updated_at = ?
                WHERE draft_id = ?
                """,
                (to_iso(updated_at), draft_id),
            )

    def complete_ghost_publish(self, draft_id: str, now: datetime) -> int:
        """
        Mark an externally published draft PUBLISHED and count the post once.

        In one transaction:
        1. status = PUBLISHED, published_at = now, error_message cleared
        2. post_count_incremented flipped False -> True (guarded update)
        3. Only if step 2 won: owner's post_count += posts for this draft
           (file count in MULTIPLE upload mode, otherwise 1)

        Returns:
            The post count increment applied (0 if already counted)

        Raises:
            DraftNotFoundError: If draft doesn't exist
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT user_id, upload_mode FROM drafts WHERE draft_id = ?",
                (draft_id,),
            ).fetchone()
            if row is None:
                raise DraftNotFoundError(draft_id)

            conn.execute(
                """
                UPDATE drafts
                SET status = ?, published_at = ?, error_message = NULL, updated_at = ?
                WHERE draft_id = ?
                """,
                (DraftStatus.PUBLISHED.value, to_iso(now), to_iso(now), draft_id),
            )

            cursor = conn.execute(
                """
                UPDATE drafts SET post_count_incremented = 1
                WHERE draft_id = ? AND post_count_incremented = 0
                """,
                (draft_id,),
            )
            if cursor.rowcount == 0:
                return 0

            increment = 1
            if row["upload_mode"] == UploadMode.MULTIPLE.value:
                file_count = conn.execute(
                    "SELECT COUNT(*) AS total FROM draft_files WHERE draft_id = ?",
                    (draft_id,),
                ).fetchone()["total"]
                increment = max(int(file_count), 1)

            conn.execute(
                "UPDATE users SET post_count = post_count + ? WHERE user_id = ?",
                (increment, row["user_id"]),
            )
            return increment

    def find_past_due_drafts(
        self,
        due_before: datetime,
        lock_stale_before: datetime,
        max_retry_count: int,
        limit: int,
    ) -> list[Draft]:
        """
        Find SCHEDULED drafts whose publish time has passed.

        Excludes drafts retried `max_retry_count` times or more, and drafts
        whose execution lock is still fresh (a worker may be on it).
        Oldest due first.
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM drafts
                WHERE status = ?
                  AND actual_publish_at < ?
                  AND retry_count < ?
                  AND (execution_lock_id IS NULL OR execution_locked_at < ?)
                ORDER BY actual_publish_at ASC
                LIMIT ?
                """,
                (
                    DraftStatus.SCHEDULED.value,
                    to_iso(due_before),
                    max_retry_count,
                    to_iso(lock_stale_before),
                    limit,
                ),
            ).fetchall()

        return [self._row_to_draft(row) for row in rows]

    def release_stale_locks(
        self,
        locked_before: datetime,
        statuses: list[DraftStatus],
        updated_at: datetime,
    ) -> int:
        """
        Clear execution locks older than `locked_before` on drafts in `statuses`.

        Returns:
            Number of locks released
        """
        placeholders = ", ".join("?" for _ in statuses)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE drafts
                SET execution_lock_id = NULL, execution_locked_at = NULL, updated_at = ?
                WHERE execution_lock_id IS NOT NULL
                  AND execution_locked_at < ?
                  AND status IN ({placeholders})
                """,
                [to_iso(updated_at), to_iso(locked_before)]
                + [DraftStatus(status).value for status in statuses],
            )
            return cursor.rowcount
