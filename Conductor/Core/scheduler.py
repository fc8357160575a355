"""Recurring runbook triggers.

A schedule enqueues an execution of its runbook's latest version whenever
its next_run_at comes due. Frequencies:

- ONCE: fires at its start time, then deactivates
- HOURLY / DAILY / WEEKLY: fixed intervals
- MONTHLY: one calendar month, day clamped to the month length
- CRON: a cron expression evaluated in the schedule's IANA timezone

Several workers may sweep at once. Each due schedule is claimed with one
conditional UPDATE keyed on its old next_run_at; a worker that loses the
claim does nothing.

Usage:
    from Conductor.Core.scheduler import Scheduler

    scheduler = Scheduler(enqueue=engine.enqueue_execution)
    scheduler.create_schedule(runbook_id=1, name="nightly", frequency="DAILY")
    fired = scheduler.sweep()
"""

import calendar
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter  # type: ignore[import-untyped]

import Conductor.Core.database as db
import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import (
    ConductorError,
    ConfigurationError,
    PersistenceError,
    SchedulingConflictError,
)
from Conductor.Core.metrics import record_schedule_conflict, record_schedule_fired
from Conductor.Core.runbook.models import TriggerType
from Conductor.Core.utils.datetime_helpers import (
    TIMEZONE,
    ensure_aware,
    isoformat,
    now as get_now,
    parse_datetime,
)
from config import Constants

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

# (runbook_id, parameters, environment, trigger_type, triggered_by)
EnqueueCallback = Callable[
    [int, dict[str, Any], Optional[str], TriggerType, Optional[str]], Any
]


class Frequency(str, Enum):
    """How often a schedule fires."""

    ONCE = "ONCE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CRON = "CRON"


INTERVALS: dict[Frequency, timedelta] = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}

_UPDATABLE_FIELDS = (
    "name",
    "frequency",
    "cron_expression",
    "timezone",
    "parameters",
    "environment",
)


@dataclass
class Schedule:
    """A recurring trigger for one runbook."""

    schedule_id: Optional[int]
    runbook_id: int
    name: str
    frequency: Frequency
    cron_expression: Optional[str] = None
    timezone: str = Constants.DEFAULT_SCHEDULE_TIMEZONE
    parameters: dict[str, Any] = field(default_factory=dict)
    environment: Optional[str] = None
    is_active: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "runbook_id": self.runbook_id,
            "name": self.name,
            "frequency": self.frequency.value,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "parameters": self.parameters,
            "environment": self.environment,
            "is_active": self.is_active,
            "next_run_at": isoformat(self.next_run_at),
            "last_run_at": isoformat(self.last_run_at),
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }


# ============================================================================
# Next-run computation
# ============================================================================


def is_valid_cron_expression(cron_expr: Optional[str]) -> bool:
    if not cron_expr or not cron_expr.strip():
        return False
    return bool(croniter.is_valid(cron_expr.strip()))


def is_valid_timezone(timezone: Optional[str]) -> bool:
    if not timezone:
        return False
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def add_month(dt: datetime) -> datetime:
    """Same wall-clock time one calendar month later, day clamped."""
    year = dt.year + dt.month // 12
    month = dt.month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def compute_next_run(
    frequency: Frequency,
    base: datetime,
    cron_expression: Optional[str] = None,
    timezone: str = Constants.DEFAULT_SCHEDULE_TIMEZONE,
) -> Optional[datetime]:
    """
    Next run strictly after base, in UTC.

    ONCE schedules have no next run.
    """
    if frequency == Frequency.ONCE:
        return None

    tz = ZoneInfo(timezone)
    local_base = ensure_aware(base).astimezone(tz)

    if frequency == Frequency.CRON:
        cron = croniter(str(cron_expression).strip(), local_base)
        next_time = cron.get_next(datetime)
        if next_time.tzinfo is None:
            next_time = next_time.replace(tzinfo=tz)
        return next_time.astimezone(TIMEZONE)

    if frequency == Frequency.MONTHLY:
        # Month arithmetic on local wall-clock time so the day stays put
        return add_month(local_base.replace(tzinfo=None)).replace(tzinfo=tz).astimezone(TIMEZONE)

    return (ensure_aware(base) + INTERVALS[frequency]).astimezone(TIMEZONE)


def next_run_after(schedule: Schedule, now: datetime) -> Optional[datetime]:
    """
    Next run after `now`, stepping from the schedule's last due time.

    Missed runs are skipped, not backfilled.
    """
    base = schedule.next_run_at or now
    next_time = compute_next_run(
        schedule.frequency, base, schedule.cron_expression, schedule.timezone
    )
    while next_time is not None and next_time <= now:
        next_time = compute_next_run(
            schedule.frequency, next_time, schedule.cron_expression, schedule.timezone
        )
    return next_time


def _parse_frequency(value: Any) -> Frequency:
    try:
        return value if isinstance(value, Frequency) else Frequency(str(value).upper())
    except ValueError:
        valid = ", ".join(f.value for f in Frequency)
        raise ConfigurationError(f"Invalid frequency '{value}'. Must be one of: {valid}")


def _validate_timing(
    frequency: Frequency, cron_expression: Optional[str], timezone: str
) -> None:
    if not is_valid_timezone(timezone):
        raise ConfigurationError(f"Invalid timezone '{timezone}'")
    if frequency == Frequency.CRON and not is_valid_cron_expression(cron_expression):
        raise ConfigurationError(f"Invalid cron expression '{cron_expression}'")


# ============================================================================
# Database helpers
# ============================================================================


def _rows(result: Optional[str], action: str) -> list[dict[str, Any]]:
    if result is None:
        raise PersistenceError(f"Database error while trying to {action}")
    return json.loads(str(result))


def _parse_schedule(data: dict[str, Any]) -> Schedule:
    parameters = data.get("parameters") or {}
    if isinstance(parameters, str):
        parameters = json.loads(parameters)
    return Schedule(
        schedule_id=data["schedule_id"],
        runbook_id=data["runbook_id"],
        name=data["name"],
        frequency=Frequency(data["frequency"]),
        cron_expression=data.get("cron_expression"),
        timezone=data.get("timezone") or Constants.DEFAULT_SCHEDULE_TIMEZONE,
        parameters=parameters,
        environment=data.get("environment"),
        is_active=bool(data.get("is_active", True)),
        next_run_at=parse_datetime(data.get("next_run_at")),
        last_run_at=parse_datetime(data.get("last_run_at")),
        created_by=data.get("created_by"),
        created_at=parse_datetime(data.get("created_at")),
    )


class Scheduler:
    """Creates schedules and fires the ones that come due."""

    def __init__(self, enqueue: Optional[EnqueueCallback] = None):
        self._enqueue = enqueue

    def set_enqueue_callback(self, enqueue: Optional[EnqueueCallback]) -> None:
        self._enqueue = enqueue

    # ========================================================================
    # CRUD
    # ========================================================================

    def create_schedule(
        self,
        runbook_id: int,
        name: str,
        frequency: Any,
        cron_expression: Optional[str] = None,
        timezone: str = Constants.DEFAULT_SCHEDULE_TIMEZONE,
        start_at: Optional[datetime] = None,
        parameters: Optional[dict[str, Any]] = None,
        environment: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Schedule:
        """
        Create an active schedule.

        ONCE and interval schedules first fire at start_at (default: now for
        ONCE, one interval from now otherwise); CRON schedules at the first
        match after start_at or now.

        Raises:
            ConfigurationError: On an invalid frequency, cron expression or
                timezone
        """
        freq = _parse_frequency(frequency)
        _validate_timing(freq, cron_expression, timezone)

        current = get_now()
        if freq == Frequency.ONCE:
            next_run_at = ensure_aware(start_at) if start_at else current
        elif freq == Frequency.CRON or start_at is None:
            next_run_at = compute_next_run(
                freq, ensure_aware(start_at) if start_at else current,
                cron_expression, timezone,
            )
        else:
            next_run_at = ensure_aware(start_at)

        rows = _rows(
            db.query_db(
                """
                INSERT INTO conductor.schedules
                (runbook_id, name, frequency, cron_expression, timezone, parameters,
                 environment, is_active, next_run_at, created_by)
                VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE, %s, %s)
                RETURNING *
                """,
                (
                    runbook_id,
                    name,
                    freq.value,
                    cron_expression if freq == Frequency.CRON else None,
                    timezone,
                    db.to_json(parameters or {}),
                    environment,
                    next_run_at,
                    created_by,
                ),
            ),
            f"create schedule '{name}'",
        )
        if not rows:
            raise PersistenceError(f"Schedule '{name}' not created")

        schedule = _parse_schedule(rows[0])
        logger.log(
            level=20,
            msg=f"Created schedule {schedule.schedule_id} '{name}' for runbook "
            f"{runbook_id} ({freq.value}, next run {isoformat(next_run_at)})",
        )
        return schedule

    def get_schedule(self, schedule_id: int) -> Optional[Schedule]:
        rows = _rows(
            db.query_db(
                "SELECT * FROM conductor.schedules WHERE schedule_id = %s",
                (schedule_id,),
            ),
            f"load schedule {schedule_id}",
        )
        return _parse_schedule(rows[0]) if rows else None

    def list_schedules(self, runbook_id: Optional[int] = None) -> list[Schedule]:
        query = "SELECT * FROM conductor.schedules"
        params: tuple = ()
        if runbook_id is not None:
            query += " WHERE runbook_id = %s"
            params = (runbook_id,)
        query += " ORDER BY schedule_id"
        return [_parse_schedule(r) for r in _rows(db.query_db(query, params), "list schedules")]

    def update_schedule(self, schedule_id: int, **changes: Any) -> Optional[Schedule]:
        """
        Update name, timing, parameters or environment of a schedule.

        A timing change recomputes next_run_at from now.
        """
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ConfigurationError(
                f"Cannot update schedule fields: {', '.join(sorted(unknown))}"
            )

        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            return None

        if "frequency" in changes:
            changes["frequency"] = _parse_frequency(changes["frequency"])
        for key, value in changes.items():
            setattr(schedule, key, value)
        _validate_timing(schedule.frequency, schedule.cron_expression, schedule.timezone)

        timing_changed = bool({"frequency", "cron_expression", "timezone"} & set(changes))
        if timing_changed and schedule.frequency != Frequency.ONCE:
            schedule.next_run_at = compute_next_run(
                schedule.frequency, get_now(), schedule.cron_expression, schedule.timezone
            )

        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.schedules
                SET name = %s, frequency = %s, cron_expression = %s, timezone = %s,
                    parameters = %s, environment = %s, next_run_at = %s
                WHERE schedule_id = %s
                RETURNING *
                """,
                (
                    schedule.name,
                    schedule.frequency.value,
                    schedule.cron_expression,
                    schedule.timezone,
                    db.to_json(schedule.parameters),
                    schedule.environment,
                    schedule.next_run_at,
                    schedule_id,
                ),
            ),
            f"update schedule {schedule_id}",
        )
        return _parse_schedule(rows[0]) if rows else None

    def delete_schedule(self, schedule_id: int) -> bool:
        rows = _rows(
            db.query_db(
                "DELETE FROM conductor.schedules WHERE schedule_id = %s RETURNING schedule_id",
                (schedule_id,),
            ),
            f"delete schedule {schedule_id}",
        )
        if rows:
            logger.log(level=20, msg=f"Deleted schedule {schedule_id}")
        return bool(rows)

    def pause(self, schedule_id: int) -> bool:
        """Deactivate a schedule; next_run_at is left as it was."""
        rows = _rows(
            db.query_db(
                "UPDATE conductor.schedules SET is_active = FALSE "
                "WHERE schedule_id = %s RETURNING schedule_id",
                (schedule_id,),
            ),
            f"pause schedule {schedule_id}",
        )
        if rows:
            logger.log(level=20, msg=f"Paused schedule {schedule_id}")
        return bool(rows)

    def resume(self, schedule_id: int) -> Optional[Schedule]:
        """Reactivate a schedule with next_run_at recomputed from now."""
        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            return None

        current = get_now()
        if schedule.frequency == Frequency.ONCE:
            if schedule.last_run_at is not None:
                raise ConfigurationError(
                    f"Schedule {schedule_id} already ran once and cannot be resumed"
                )
            next_run_at = max(schedule.next_run_at or current, current)
        else:
            next_run_at = compute_next_run(
                schedule.frequency, current, schedule.cron_expression, schedule.timezone
            )

        rows = _rows(
            db.query_db(
                "UPDATE conductor.schedules SET is_active = TRUE, next_run_at = %s "
                "WHERE schedule_id = %s RETURNING *",
                (next_run_at, schedule_id),
            ),
            f"resume schedule {schedule_id}",
        )
        if not rows:
            return None
        logger.log(
            level=20,
            msg=f"Resumed schedule {schedule_id}, next run {isoformat(next_run_at)}",
        )
        return _parse_schedule(rows[0])

    # ========================================================================
    # Firing
    # ========================================================================

    def get_due_schedules(self, now: datetime) -> list[Schedule]:
        rows = _rows(
            db.query_db(
                "SELECT * FROM conductor.schedules "
                "WHERE is_active AND next_run_at IS NOT NULL AND next_run_at <= %s "
                "ORDER BY next_run_at, schedule_id",
                (now,),
            ),
            "list due schedules",
        )
        return [_parse_schedule(r) for r in rows]

    def claim(self, schedule: Schedule, now: datetime) -> Schedule:
        """
        Atomically advance a due schedule.

        Raises:
            SchedulingConflictError: If another worker claimed it first
        """
        next_run_at = next_run_after(schedule, now)
        still_active = schedule.frequency != Frequency.ONCE

        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.schedules
                SET next_run_at = %s, last_run_at = %s, is_active = %s
                WHERE schedule_id = %s AND next_run_at = %s AND is_active
                RETURNING *
                """,
                (next_run_at, now, still_active, schedule.schedule_id, schedule.next_run_at),
            ),
            f"claim schedule {schedule.schedule_id}",
        )
        if not rows:
            raise SchedulingConflictError(
                f"Schedule {schedule.schedule_id} was claimed by another worker"
            )
        return _parse_schedule(rows[0])

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Fire every due schedule this worker manages to claim.

        Returns:
            Number of executions enqueued
        """
        if self._enqueue is None:
            raise ConfigurationError("Scheduler has no enqueue callback")

        current = ensure_aware(now) if now else get_now()
        fired = 0

        for schedule in self.get_due_schedules(current):
            try:
                claimed = self.claim(schedule, current)
            except SchedulingConflictError as e:
                logger.log(level=10, msg=str(e))
                record_schedule_conflict()
                continue

            triggered_by = schedule.created_by or Constants.SCHEDULER_TRIGGERED_BY
            try:
                self._enqueue(
                    schedule.runbook_id,
                    dict(schedule.parameters),
                    schedule.environment,
                    TriggerType.SCHEDULED,
                    triggered_by,
                )
            except ConductorError as e:
                logger.log(
                    level=40,
                    msg=f"Schedule {schedule.schedule_id} '{schedule.name}' could not "
                    f"enqueue runbook {schedule.runbook_id}: {e}",
                )
                continue

            fired += 1
            record_schedule_fired(schedule.frequency.value)
            logger.log(
                level=20,
                msg=f"Schedule {schedule.schedule_id} '{schedule.name}' fired; "
                f"next run {isoformat(claimed.next_run_at) or 'never'}",
            )

        return fired
