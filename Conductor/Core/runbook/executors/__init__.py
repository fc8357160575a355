"""Runbook step executors package.

This package contains one executor function per step type:
- http: HTTP requests
- sql: Queries against a target PostgreSQL database
- shell: Commands in a sandboxed, time-bounded subprocess
- script: Inline python/node/bash code in the same sandbox
- wait: Cancellable pause
- manual: Hands off to the approval gate
- conditional: Branch on a condition
- ai: Chat-completions request to a model backend
- parallel: Concurrent fan-out of child steps

Each executor module provides an `execute_*_step(step, context)` function
that returns a StepOutcome. Executors never write execution state; the
orchestrator records logs and results for them.

Usage:
    from Conductor.Core.runbook.executors import build_default_executors

    executors = build_default_executors()
    outcome = executors[StepType.HTTP](step, context)
"""

from typing import Callable

from Conductor.Core.runbook.executors.ai import execute_ai_step
from Conductor.Core.runbook.executors.conditional import (
    compare,
    evaluate_condition,
    execute_conditional_step,
)
from Conductor.Core.runbook.executors.http import (
    MAX_RESPONSE_BODY_SIZE,
    execute_http_step,
)
from Conductor.Core.runbook.executors.manual import execute_manual_step
from Conductor.Core.runbook.executors.parallel import execute_parallel_step
from Conductor.Core.runbook.executors.script import execute_script_step
from Conductor.Core.runbook.executors.shell import (
    ALLOWED_STEP_ENV_VARS,
    MAX_PROCESS_OUTPUT_SIZE,
    execute_shell_step,
    run_process,
)
from Conductor.Core.runbook.executors.sql import execute_sql_step
from Conductor.Core.runbook.executors.wait import execute_wait_step
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import StepType

StepExecutor = Callable[..., StepOutcome]


def build_default_executors() -> dict[StepType, StepExecutor]:
    """Map every step type to its executor."""
    return {
        StepType.HTTP: execute_http_step,
        StepType.SQL: execute_sql_step,
        StepType.SHELL: execute_shell_step,
        StepType.SCRIPT: execute_script_step,
        StepType.MANUAL: execute_manual_step,
        StepType.CONDITIONAL: execute_conditional_step,
        StepType.AI: execute_ai_step,
        StepType.WAIT: execute_wait_step,
        StepType.PARALLEL: execute_parallel_step,
    }


__all__ = [
    "StepExecutor",
    "ExecutionContext",
    "build_default_executors",
    # HTTP executor
    "execute_http_step",
    "MAX_RESPONSE_BODY_SIZE",
    # SQL executor
    "execute_sql_step",
    # Shell / script executors
    "execute_shell_step",
    "execute_script_step",
    "run_process",
    "ALLOWED_STEP_ENV_VARS",
    "MAX_PROCESS_OUTPUT_SIZE",
    # Control flow executors
    "execute_wait_step",
    "execute_manual_step",
    "execute_conditional_step",
    "evaluate_condition",
    "compare",
    "execute_parallel_step",
    # AI executor
    "execute_ai_step",
]
