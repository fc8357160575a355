"""Script step executor.

This module writes inline step code to a temporary file and runs it with
the runtime's interpreter, using the same sandboxed process runner as SHELL
steps.

Runtimes:
    python: python3 -u
    node: node
    bash: bash -e

Usage:
    from Conductor.Core.runbook.executors.script import execute_script_step

    outcome = execute_script_step(step, context)
"""

import logging
import os
import resource
import tempfile

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.executors.shell import (
    build_step_env,
    outcome_from_process,
    run_process,
)
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import ScriptStep

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

INTERPRETERS: dict[str, list[str]] = {
    "python": ["python3", "-u"],
    "node": ["node"],
    "bash": ["bash", "-e"],
}

SUFFIXES = {"python": ".py", "node": ".js", "bash": ".sh"}


def _cpu_limit(timeout: float):
    """CPU-time rlimit as a backstop to the wall-clock deadline."""

    def set_limits() -> None:
        try:
            limit = int(timeout) + 5
            resource.setrlimit(resource.RLIMIT_CPU, (limit, limit + 5))
        except (ValueError, OSError):
            # Resource limits may not be available on all platforms
            pass

    return set_limits


def execute_script_step(step: ScriptStep, context: ExecutionContext) -> StepOutcome:
    """Execute a SCRIPT step."""
    interpreter = INTERPRETERS.get(step.runtime)
    if interpreter is None:
        return StepOutcome.failure(f"Unsupported runtime: {step.runtime}")

    timeout = context.time_budget(step.timeout_seconds)
    logger.log(
        level=20,
        msg=f"SCRIPT step '{step.id}' (execution {context.execution_id}): "
        f"{step.runtime} (timeout: {timeout:g}s)",
    )

    with tempfile.NamedTemporaryFile(
        mode="w", suffix=SUFFIXES[step.runtime], delete=False
    ) as f:
        f.write(step.code)
        script_path = f.name

    try:
        result = run_process(
            interpreter + [script_path],
            timeout=timeout,
            cancel_event=context.cancel_event,
            env=build_step_env(context, step.env),
            preexec_fn=_cpu_limit(timeout),
        )
    except OSError as e:
        logger.log(level=30, msg=f"SCRIPT step '{step.id}' could not start: {e}")
        return StepOutcome.failure(f"Could not start {step.runtime}: {e}")
    finally:
        try:
            os.unlink(script_path)
        except OSError:
            pass

    return outcome_from_process(step.id, result, step.expected_exit_code, timeout)
