"""Runbook and execution database operations.

This module is the engine's store. It contains all database operations for
runbook definitions and their executions:
- save_runbook: Save a definition, creating a new version when required
- get_latest_runbook / get_runbook_version: The read contract
- create_execution: Enqueue a new execution
- claim_execution / claim_next_queued: Atomic claims (only one worker wins)
- update_progress / pause_execution / finish_execution: State transitions
- cancel_if_idle / request_cancel / get_cancel_requested: Cancellation
- append_log / list_logs: Append-only execution log
- record_step_result / get_step_results: Per-attempt step results

Every write raises PersistenceError when the database cannot be reached, so
the orchestrator can tell an engine failure apart from a step failure.

Usage:
    from Conductor.Core.runbook import db as store

    execution = store.create_execution(runbook, parameters={}, environment=None)
    claimed = store.claim_execution(execution.execution_id, [ExecutionStatus.QUEUED])
"""

import json
import logging
from typing import Any, Iterable, Optional

import Conductor.Core.database as db
import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import PersistenceError
from Conductor.Core.runbook.models import (
    Execution,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    StepResult,
    StepResultStatus,
    TriggerType,
)
from Conductor.Core.runbook_parser import (
    Runbook,
    RunbookStatus,
    parse_runbook,
)
from Conductor.Core.utils.datetime_helpers import parse_datetime

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

TERMINAL_STATUSES = [
    s.value for s in ExecutionStatus if ExecutionStatus.is_terminal(s)
]

_RUNBOOK_COLUMNS = (
    "runbook_id, name, description, status, environment, version, is_latest, "
    "definition, timeout_seconds, created_by, created_at"
)


def _rows(result: Optional[str], action: str) -> list[dict[str, Any]]:
    if result is None:
        raise PersistenceError(f"Database error while trying to {action}")
    return json.loads(str(result))


def _first(result: Optional[str], action: str) -> Optional[dict[str, Any]]:
    rows = _rows(result, action)
    return rows[0] if rows else None


# ============================================================================
# Runbook Database Operations
# ============================================================================


def _parse_runbook_row(data: dict[str, Any]) -> Runbook:
    definition = data.get("definition") or {}
    if isinstance(definition, str):
        definition = json.loads(definition)

    runbook = parse_runbook(
        {
            "name": data["name"],
            "description": data.get("description"),
            "status": data.get("status"),
            "environment": data.get("environment"),
            "version": data.get("version", 1),
            "is_latest": data.get("is_latest", True),
            "timeout_seconds": data.get("timeout_seconds"),
            "created_by": data.get("created_by"),
            "runbook_id": data["runbook_id"],
            **definition,
        }
    )
    runbook.created_at = parse_datetime(data.get("created_at"))
    return runbook


def get_latest_runbook(runbook_id: int) -> Optional[Runbook]:
    """Load the latest version of a runbook."""
    row = _first(
        db.query_db(
            f"SELECT {_RUNBOOK_COLUMNS} FROM conductor.runbooks "
            "WHERE runbook_id = %s AND is_latest",
            (runbook_id,),
        ),
        f"load runbook {runbook_id}",
    )
    return _parse_runbook_row(row) if row else None


def get_runbook_version(runbook_id: int, version: int) -> Optional[Runbook]:
    """Load one specific (immutable) version of a runbook."""
    row = _first(
        db.query_db(
            f"SELECT {_RUNBOOK_COLUMNS} FROM conductor.runbooks "
            "WHERE runbook_id = %s AND version = %s",
            (runbook_id, version),
        ),
        f"load runbook {runbook_id} v{version}",
    )
    return _parse_runbook_row(row) if row else None


def is_version_referenced(runbook_id: int, version: int) -> bool:
    """Check whether any execution points at a runbook version."""
    rows = _rows(
        db.query_db(
            "SELECT 1 AS referenced FROM conductor.executions "
            "WHERE runbook_id = %s AND runbook_version = %s LIMIT 1",
            (runbook_id, version),
        ),
        "check runbook references",
    )
    return bool(rows)


def save_runbook(runbook: Runbook, created_by: Optional[str] = None) -> Runbook:
    """
    Persist a runbook definition.

    A new runbook starts at version 1. An unreferenced DRAFT is edited in
    place; anything else gets a new version and becomes the latest, leaving
    the previous version untouched for executions that reference it.

    Returns:
        The saved runbook as stored
    """
    params_common = (
        runbook.name,
        runbook.description,
        runbook.status.value,
        runbook.environment.value,
        db.to_json(runbook.definition()),
        runbook.timeout_seconds,
        created_by or runbook.created_by,
    )

    if runbook.runbook_id is None:
        row = _first(
            db.query_db(
                "INSERT INTO conductor.runbooks "
                "(runbook_id, name, description, status, environment, definition, "
                "timeout_seconds, created_by, version, is_latest) "
                "VALUES (nextval('conductor.runbook_id_seq'), %s, %s, %s, %s, %s, %s, %s, 1, TRUE) "
                f"RETURNING {_RUNBOOK_COLUMNS}",
                params_common,
            ),
            f"create runbook '{runbook.name}'",
        )
        saved = _parse_runbook_row(row)  # type: ignore[arg-type]
        logger.log(level=20, msg=f"Created runbook {saved.runbook_id} '{saved.name}'")
        return saved

    latest = get_latest_runbook(runbook.runbook_id)
    if (
        latest is not None
        and latest.status == RunbookStatus.DRAFT
        and not is_version_referenced(runbook.runbook_id, latest.version)
    ):
        row = _first(
            db.query_db(
                "UPDATE conductor.runbooks SET name = %s, description = %s, "
                "status = %s, environment = %s, definition = %s, "
                "timeout_seconds = %s, created_by = %s "
                "WHERE runbook_id = %s AND version = %s "
                f"RETURNING {_RUNBOOK_COLUMNS}",
                params_common + (runbook.runbook_id, latest.version),
            ),
            f"update runbook {runbook.runbook_id}",
        )
        saved = _parse_runbook_row(row)  # type: ignore[arg-type]
        logger.log(
            level=10,
            msg=f"Updated draft runbook {saved.runbook_id} v{saved.version} in place",
        )
        return saved

    row = _first(
        db.query_db(
            "WITH previous AS ("
            "  UPDATE conductor.runbooks SET is_latest = FALSE "
            "  WHERE runbook_id = %s AND is_latest RETURNING version"
            ") "
            "INSERT INTO conductor.runbooks "
            "(runbook_id, name, description, status, environment, definition, "
            "timeout_seconds, created_by, version, is_latest) "
            "SELECT %s, %s, %s, %s, %s, %s, %s, %s, "
            "COALESCE((SELECT MAX(version) FROM conductor.runbooks WHERE runbook_id = %s), 0) + 1, "
            "TRUE "
            f"RETURNING {_RUNBOOK_COLUMNS}",
            (runbook.runbook_id, runbook.runbook_id) + params_common + (runbook.runbook_id,),
        ),
        f"version runbook {runbook.runbook_id}",
    )
    saved = _parse_runbook_row(row)  # type: ignore[arg-type]
    logger.log(
        level=20, msg=f"Saved runbook {saved.runbook_id} as version {saved.version}"
    )
    return saved


# ============================================================================
# Execution Database Operations
# ============================================================================


def _parse_execution(data: dict[str, Any]) -> Execution:
    """Parse a database row into an Execution object."""
    return Execution(
        execution_id=data["execution_id"],
        runbook_id=data["runbook_id"],
        runbook_version=data["runbook_version"],
        status=ExecutionStatus(data["status"]),
        trigger_type=TriggerType(data.get("trigger_type") or "manual"),
        triggered_by=data.get("triggered_by"),
        environment=data.get("environment"),
        parameters=data.get("parameters") or {},
        variables=data.get("variables") or {},
        current_step_index=data.get("current_step_index") or 0,
        total_steps=data.get("total_steps") or 0,
        error_message=data.get("error_message"),
        error_step=data.get("error_step"),
        cancel_requested=bool(data.get("cancel_requested")),
        started_at=parse_datetime(data.get("started_at")),
        finished_at=parse_datetime(data.get("finished_at")),
        created_at=parse_datetime(data.get("created_at")),
    )


def create_execution(
    runbook: Runbook,
    parameters: dict[str, Any],
    environment: Optional[str],
    trigger_type: TriggerType = TriggerType.MANUAL,
    triggered_by: Optional[str] = None,
) -> Execution:
    """
    Create a QUEUED execution pinned to the runbook's version.

    Raises:
        PersistenceError: If the row could not be written
    """
    row = _first(
        db.query_db(
            """
            INSERT INTO conductor.executions
            (runbook_id, runbook_version, status, trigger_type, triggered_by,
             environment, parameters, variables, total_steps)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                runbook.runbook_id,
                runbook.version,
                ExecutionStatus.QUEUED.value,
                trigger_type.value,
                triggered_by,
                environment,
                db.to_json(parameters),
                db.to_json(dict(runbook.variables)),
                runbook.count_steps(),
            ),
        ),
        f"enqueue runbook {runbook.runbook_id}",
    )
    if row is None:
        raise PersistenceError(f"Execution for runbook {runbook.runbook_id} not created")

    execution = _parse_execution(row)
    logger.log(
        level=20,
        msg=f"Enqueued execution {execution.execution_id} for runbook "
        f"{runbook.runbook_id} v{runbook.version} ({trigger_type.value})",
    )
    return execution


def get_execution(execution_id: int) -> Optional[Execution]:
    row = _first(
        db.query_db(
            "SELECT * FROM conductor.executions WHERE execution_id = %s",
            (execution_id,),
        ),
        f"load execution {execution_id}",
    )
    return _parse_execution(row) if row else None


def claim_execution(
    execution_id: int, from_statuses: Iterable[ExecutionStatus]
) -> Optional[Execution]:
    """
    Atomically move an execution to RUNNING.

    Returns:
        The claimed execution, or None if another worker won (or the
        execution is no longer in one of from_statuses)
    """
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions
            SET status = 'RUNNING', started_at = COALESCE(started_at, NOW())
            WHERE execution_id = %s AND status = ANY(%s)
            RETURNING *
            """,
            (execution_id, [s.value for s in from_statuses]),
        ),
        f"claim execution {execution_id}",
    )
    return _parse_execution(row) if row else None


def claim_next_queued() -> Optional[Execution]:
    """Claim the oldest QUEUED execution, skipping rows other workers hold."""
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions
            SET status = 'RUNNING', started_at = COALESCE(started_at, NOW())
            WHERE execution_id = (
                SELECT execution_id FROM conductor.executions
                WHERE status = 'QUEUED'
                ORDER BY created_at, execution_id
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """
        ),
        "claim queued execution",
    )
    return _parse_execution(row) if row else None


def update_progress(
    execution_id: int, current_step_index: int, variables: dict[str, Any]
) -> None:
    """Persist the step index and accumulated variables after a step."""
    _rows(
        db.query_db(
            """
            UPDATE conductor.executions
            SET current_step_index = GREATEST(current_step_index, %s), variables = %s
            WHERE execution_id = %s AND status = 'RUNNING'
            RETURNING execution_id
            """,
            (current_step_index, db.to_json(variables), execution_id),
        ),
        f"persist progress of execution {execution_id}",
    )


def requeue_execution(execution_id: int) -> bool:
    """
    RUNNING -> QUEUED for a claim that was never dispatched.

    started_at is cleared so the execution timeout starts again when a
    worker next claims it.
    """
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions
            SET status = 'QUEUED', started_at = NULL
            WHERE execution_id = %s AND status = 'RUNNING'
            RETURNING execution_id
            """,
            (execution_id,),
        ),
        f"requeue execution {execution_id}",
    )
    return row is not None


def pause_execution(execution_id: int, current_step_index: int) -> bool:
    """RUNNING -> PAUSED at a MANUAL step."""
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions
            SET status = 'PAUSED', current_step_index = %s
            WHERE execution_id = %s AND status = 'RUNNING'
            RETURNING execution_id
            """,
            (current_step_index, execution_id),
        ),
        f"pause execution {execution_id}",
    )
    return row is not None


def finish_execution(
    execution_id: int,
    status: ExecutionStatus,
    error_message: Optional[str] = None,
    error_step: Optional[str] = None,
) -> bool:
    """
    Move an execution to a terminal status.

    Terminal executions are never updated again.

    Returns:
        True if this call performed the transition
    """
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions
            SET status = %s, error_message = %s, error_step = %s, finished_at = NOW()
            WHERE execution_id = %s AND status <> ALL(%s)
            RETURNING execution_id
            """,
            (status.value, error_message, error_step, execution_id, TERMINAL_STATUSES),
        ),
        f"finish execution {execution_id}",
    )
    if row:
        logger.log(
            level=10, msg=f"Execution {execution_id} finished with {status.value}"
        )
    return row is not None


def cancel_if_idle(execution_id: int) -> bool:
    """QUEUED/PAUSED -> CANCELLED in one conditional update."""
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions
            SET status = 'CANCELLED', finished_at = NOW(),
                error_message = 'Cancelled by request'
            WHERE execution_id = %s AND status IN ('QUEUED', 'PAUSED')
            RETURNING execution_id
            """,
            (execution_id,),
        ),
        f"cancel execution {execution_id}",
    )
    return row is not None


def request_cancel(execution_id: int) -> bool:
    """Flag a RUNNING execution for cooperative cancellation."""
    row = _first(
        db.query_db(
            """
            UPDATE conductor.executions SET cancel_requested = TRUE
            WHERE execution_id = %s AND status = 'RUNNING'
            RETURNING execution_id
            """,
            (execution_id,),
        ),
        f"request cancel of execution {execution_id}",
    )
    return row is not None


def is_cancel_requested(execution_id: int) -> bool:
    row = _first(
        db.query_db(
            "SELECT cancel_requested FROM conductor.executions WHERE execution_id = %s",
            (execution_id,),
        ),
        f"read cancel flag of execution {execution_id}",
    )
    return bool(row and row["cancel_requested"])


def get_cancel_requested(execution_ids: list[int]) -> set[int]:
    """Subset of the given executions that have a pending cancel request."""
    if not execution_ids:
        return set()
    rows = _rows(
        db.query_db(
            "SELECT execution_id FROM conductor.executions "
            "WHERE execution_id = ANY(%s) AND cancel_requested",
            (list(execution_ids),),
        ),
        "read cancel flags",
    )
    return {r["execution_id"] for r in rows}


def get_resumable_executions() -> list[int]:
    """PAUSED executions whose current approval has been decided."""
    rows = _rows(
        db.query_db(
            """
            SELECT e.execution_id FROM conductor.executions e
            WHERE e.status = 'PAUSED'
              AND EXISTS (
                SELECT 1 FROM conductor.approvals a
                WHERE a.execution_id = e.execution_id
                  AND a.step_index = e.current_step_index
                  AND a.status <> 'PENDING'
              )
              AND NOT EXISTS (
                SELECT 1 FROM conductor.approvals a
                WHERE a.execution_id = e.execution_id
                  AND a.step_index = e.current_step_index
                  AND a.status = 'PENDING'
              )
            ORDER BY e.execution_id
            """
        ),
        "list resumable executions",
    )
    return [r["execution_id"] for r in rows]


# ============================================================================
# Log Database Operations
# ============================================================================


def append_log(
    execution_id: int,
    step_index: Optional[int],
    level: LogLevel,
    message: str,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Append one entry to an execution's log."""
    ok = db.insert_db(
        """
        INSERT INTO conductor.execution_logs
        (execution_id, step_index, level, message, metadata)
        VALUES (%s, %s, %s, %s, %s)
        """,
        (execution_id, step_index, level.value, message, db.to_json(metadata or {})),
    )
    if not ok:
        raise PersistenceError(f"Could not append log for execution {execution_id}")


def list_logs(execution_id: int) -> list[LogEntry]:
    rows = _rows(
        db.query_db(
            "SELECT * FROM conductor.execution_logs WHERE execution_id = %s "
            "ORDER BY log_id",
            (execution_id,),
        ),
        f"list logs of execution {execution_id}",
    )
    return [
        LogEntry(
            log_id=r["log_id"],
            execution_id=r["execution_id"],
            step_index=r.get("step_index"),
            level=LogLevel(r["level"]),
            message=r["message"],
            metadata=r.get("metadata") or {},
            created_at=parse_datetime(r.get("created_at")),
        )
        for r in rows
    ]


# ============================================================================
# Step Result Database Operations
# ============================================================================


def _parse_step_result(data: dict[str, Any]) -> StepResult:
    return StepResult(
        result_id=data["result_id"],
        execution_id=data["execution_id"],
        step_index=data["step_index"],
        step_id=data["step_id"],
        step_name=data["step_name"],
        step_type=data["step_type"],
        status=StepResultStatus(data["status"]),
        output=data.get("output"),
        error=data.get("error"),
        attempt_number=data.get("attempt_number") or 1,
        started_at=parse_datetime(data.get("started_at")),
        finished_at=parse_datetime(data.get("finished_at")),
    )


def record_step_result(result: StepResult) -> StepResult:
    """Insert a step result and return it with its database ID."""
    row = _first(
        db.query_db(
            """
            INSERT INTO conductor.step_results
            (execution_id, step_index, step_id, step_name, step_type, status,
             output, error, attempt_number, started_at, finished_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                result.execution_id,
                result.step_index,
                result.step_id,
                result.step_name,
                result.step_type,
                result.status.value,
                db.to_json(result.output),
                result.error,
                result.attempt_number,
                result.started_at,
                result.finished_at,
            ),
        ),
        f"record result of step '{result.step_id}'",
    )
    if row is None:
        raise PersistenceError(f"Step result for '{result.step_id}' not recorded")
    return _parse_step_result(row)


def get_step_results(execution_id: int) -> list[StepResult]:
    rows = _rows(
        db.query_db(
            "SELECT * FROM conductor.step_results WHERE execution_id = %s "
            "ORDER BY result_id",
            (execution_id,),
        ),
        f"list step results of execution {execution_id}",
    )
    return [_parse_step_result(r) for r in rows]
