"""Manual step executor.

MANUAL steps never resolve themselves; they hand control to the approval
gate, which persists the request and pauses the execution.
"""

from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import ManualStep


def execute_manual_step(step: ManualStep, context: ExecutionContext) -> StepOutcome:
    return StepOutcome.pending_approval()
