"""SQL step executor.

Runs one query against the database named by the step, either through a
literal connection string or a DATABASE_URL-type secret. This is a separate
connection from the engine's own database.

Usage:
    from Conductor.Core.runbook.executors.sql import execute_sql_step

    outcome = execute_sql_step(step, context)
"""

import json
import logging
from typing import Any, Callable, Optional

import psycopg2

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import StepExecutionError
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import SqlStep

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

MAX_RESULT_ROWS = 1000


def _connection_string(step: SqlStep, context: ExecutionContext) -> str:
    if step.connection_string:
        return step.connection_string
    if step.secret_name and step.secret_name in context.secrets:
        return context.secrets[step.secret_name]
    raise StepExecutionError(
        f"Secret '{step.secret_name}' is not available to this execution"
    )


def _run_query(
    step: SqlStep, dsn: str, connect: Callable[..., Any], timeout: float
) -> Any:
    conn = None
    try:
        conn = connect(dsn, connect_timeout=max(1, int(timeout)))
        with conn.cursor() as cur:
            # Server-side guard in addition to the step timeout
            cur.execute(
                "SET statement_timeout = %s", (max(1, int(timeout * 1000)),)
            )
            cur.execute(step.query, step.parameters)
            if cur.description:
                columns = [col[0] for col in cur.description]
                rows = [
                    dict(zip(columns, row)) for row in cur.fetchmany(MAX_RESULT_ROWS)
                ]
                # Round-trip through JSON so dates/decimals are serializable
                output: Any = json.loads(json.dumps(rows, default=str))
                row_count = len(rows)
            else:
                output = {"rows_affected": cur.rowcount}
                row_count = cur.rowcount
        conn.commit()
        return output, row_count
    except psycopg2.Error as e:
        if conn is not None:
            conn.rollback()
        raise StepExecutionError(f"Query failed: {str(e).strip()}")
    finally:
        if conn is not None:
            conn.close()


def execute_sql_step(
    step: SqlStep,
    context: ExecutionContext,
    connect: Optional[Callable[..., Any]] = None,
) -> StepOutcome:
    """
    Execute a SQL step.

    Returns:
        Rows as a list of dicts for statements that return rows, otherwise
        {"rows_affected": n}
    """
    logger.log(
        level=20,
        msg=f"SQL step '{step.id}' (execution {context.execution_id}) starting",
    )
    try:
        dsn = _connection_string(step, context)
        timeout = context.time_budget(step.timeout_seconds)
        output, row_count = _run_query(step, dsn, connect or psycopg2.connect, timeout)
    except StepExecutionError as e:
        # Driver errors can echo the connection string
        error_msg = context.redact(str(e))
        logger.log(level=30, msg=f"SQL step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)

    if step.expected_row_count is not None and row_count != step.expected_row_count:
        error_msg = f"Expected {step.expected_row_count} rows, got {row_count}"
        logger.log(level=30, msg=f"SQL step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg, output)

    logger.log(level=20, msg=f"SQL step '{step.id}' completed ({row_count} rows)")
    return StepOutcome.success(output)
