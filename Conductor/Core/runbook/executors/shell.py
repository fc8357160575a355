"""SHELL step executor.

This module runs a command in its own process group with a filtered
environment, and kills the whole group when the step deadline passes or the
execution is cancelled. The process runner is shared with the SCRIPT
executor.

Security Model:
    Commands run in a restricted environment with:
    - Only allowlisted environment variables passed (plus the step's env)
    - No access to CONDUCTOR_MASTER_KEY, DATABASE_URL or other engine secrets
    - Output size limits

Usage:
    from Conductor.Core.runbook.executors.shell import execute_shell_step

    outcome = execute_shell_step(step, context)
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import ShellStep
from config import Constants

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

MAX_PROCESS_OUTPUT_SIZE = Constants.MAX_PROCESS_OUTPUT_SIZE

# How often a running process checks the cancel event and deadline (seconds)
PROCESS_POLL_INTERVAL = 0.2

# Environment variables a step process may inherit from the worker
ALLOWED_STEP_ENV_VARS: list[str] = [
    "PATH",
    "HOME",
    "USER",
    "LANG",
    "LC_ALL",
    "TZ",
]


@dataclass
class ProcessResult:
    """Outcome of one subprocess run."""

    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False

    def to_output(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "stdout": _truncate(self.stdout),
            "stderr": _truncate(self.stderr),
        }


def _truncate(text: str) -> str:
    if len(text) > MAX_PROCESS_OUTPUT_SIZE:
        return text[:MAX_PROCESS_OUTPUT_SIZE] + "\n...[output truncated]"
    return text


def build_step_env(context: ExecutionContext, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    """
    Build the environment for a step subprocess.

    Only allowlisted variables from the worker's environment are passed on;
    more can be allowed via CONDUCTOR_ADDITIONAL_STEP_ENV_VARS (comma
    separated). Execution identifiers and the step's own env are added last.
    """
    allowed_vars = set(ALLOWED_STEP_ENV_VARS)
    additional_vars = os.environ.get("CONDUCTOR_ADDITIONAL_STEP_ENV_VARS", "")
    for var_name in additional_vars.split(","):
        if var_name.strip():
            allowed_vars.add(var_name.strip())

    safe_env = {name: os.environ[name] for name in allowed_vars if name in os.environ}
    safe_env["CONDUCTOR_EXECUTION_ID"] = str(context.execution_id)
    safe_env["CONDUCTOR_RUNBOOK_ID"] = str(context.runbook_id)
    if context.environment:
        safe_env["CONDUCTOR_ENVIRONMENT"] = context.environment
    safe_env.update(extra or {})
    return safe_env


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # Already gone
        proc.kill()


def run_process(
    argv: list[str] | str,
    timeout: float,
    cancel_event: threading.Event,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[str] = None,
    shell: bool = False,
    preexec_fn: Optional[Callable[[], None]] = None,
) -> ProcessResult:
    """
    Run a process to completion, the deadline, or cancellation.

    The process is started in a new session so the whole group (including
    anything it spawned) is killed on timeout or cancel.

    Raises:
        OSError: If the process cannot be started
    """
    proc = subprocess.Popen(
        argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
        cwd=cwd,
        shell=shell,
        start_new_session=True,
        preexec_fn=preexec_fn,
    )

    deadline = time.monotonic() + timeout
    timed_out = cancelled = False
    while True:
        remaining = deadline - time.monotonic()
        try:
            stdout, stderr = proc.communicate(
                timeout=max(0.01, min(PROCESS_POLL_INTERVAL, remaining))
            )
            break
        except subprocess.TimeoutExpired:
            if cancel_event.is_set():
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            _kill_group(proc)
            stdout, stderr = proc.communicate()
            break

    return ProcessResult(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
        cancelled=cancelled,
    )


def outcome_from_process(
    step_id: str, result: ProcessResult, expected_exit_code: int, timeout: float
) -> StepOutcome:
    """Map a ProcessResult onto a step outcome."""
    output = result.to_output()
    if result.cancelled:
        logger.log(level=30, msg=f"Step '{step_id}' process killed: execution cancelled")
        return StepOutcome.failure("Cancelled while running", output)
    if result.timed_out:
        logger.log(level=30, msg=f"Step '{step_id}' process killed after {timeout:g}s")
        return StepOutcome.failure(f"Timed out after {timeout:g}s", output)
    if result.exit_code != expected_exit_code:
        error_msg = (
            f"Exit code {result.exit_code} (expected {expected_exit_code})"
        )
        logger.log(level=30, msg=f"Step '{step_id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg, output)

    logger.log(level=20, msg=f"Step '{step_id}' process exited with {result.exit_code}")
    return StepOutcome.success(output)


def execute_shell_step(step: ShellStep, context: ExecutionContext) -> StepOutcome:
    """
    Execute a SHELL step.

    With shell=False (the default) the command and args are passed straight
    to exec, so no shell interpolation happens.
    """
    if step.shell:
        argv: list[str] | str = " ".join(
            [step.command] + [shlex.quote(a) for a in step.args]
        )
    else:
        argv = [step.command] + list(step.args)

    timeout = context.time_budget(step.timeout_seconds)
    logger.log(
        level=20,
        msg=f"SHELL step '{step.id}' (execution {context.execution_id}): "
        f"{context.redact(step.command)} (timeout: {timeout:g}s)",
    )

    try:
        result = run_process(
            argv,
            timeout=timeout,
            cancel_event=context.cancel_event,
            env=build_step_env(context, step.env),
            cwd=step.working_directory,
            shell=step.shell,
        )
    except OSError as e:
        error_msg = context.redact(f"Could not start command: {e}")
        logger.log(level=30, msg=f"SHELL step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)

    return outcome_from_process(step.id, result, step.expected_exit_code, timeout)
