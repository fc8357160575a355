"""Wait step executor.

Pauses the execution for a fixed duration. The wait is on the execution's
cancel event, so a cancel request ends it early; a wait longer than the
step's deadline fails when the deadline passes.

Usage:
    from Conductor.Core.runbook.executors.wait import execute_wait_step

    outcome = execute_wait_step(step, context)
"""

import logging

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import WaitStep

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


def execute_wait_step(step: WaitStep, context: ExecutionContext) -> StepOutcome:
    """Wait for step.duration_seconds. SUCCESS unless cancelled or past the deadline."""
    reason = f" ({step.reason})" if step.reason else ""
    logger.log(
        level=20,
        msg=f"Wait step '{step.id}': waiting {step.duration_seconds}s{reason}",
    )

    remaining = context.remaining()
    bounded = remaining is not None and remaining < step.duration_seconds
    wait_for = remaining if bounded else step.duration_seconds

    if context.cancel_event.wait(wait_for):
        logger.log(level=20, msg=f"Wait step '{step.id}' interrupted by cancel")
        return StepOutcome.failure("Cancelled while waiting")
    if bounded:
        logger.log(level=30, msg=f"Wait step '{step.id}' hit its step timeout")
        return StepOutcome.failure(
            f"Step timed out after {wait_for:g}s of a {step.duration_seconds:g}s wait"
        )

    return StepOutcome.success({"waited_seconds": step.duration_seconds})
