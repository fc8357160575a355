"""Runbook execution package.

This package provides the core functionality for runbook execution:
- Data models (ExecutionStatus, StepOutcome, ExecutionContext, etc.)
- Database operations (the runbook/execution store)
- Template substitution for step configuration

Usage:
    from Conductor.Core.runbook import (
        # Models
        ExecutionStatus,
        StepOutcome,
        ExecutionContext,

        # Database operations
        create_execution,
        get_execution,
        list_logs,
    )
"""

# Models
from Conductor.Core.runbook.models import (
    Execution,
    ExecutionContext,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    StepOutcome,
    StepOutcomeStatus,
    StepResult,
    StepResultStatus,
    TriggerType,
)

# Database operations
from Conductor.Core.runbook.db import (
    create_execution,
    get_execution,
    get_latest_runbook,
    get_runbook_version,
    get_step_results,
    list_logs,
    save_runbook,
)

# Substitution
from Conductor.Core.runbook.substitution import (
    resolve_step,
    substitute_all,
)

__all__ = [
    # Models
    "Execution",
    "ExecutionContext",
    "ExecutionStatus",
    "LogEntry",
    "LogLevel",
    "StepOutcome",
    "StepOutcomeStatus",
    "StepResult",
    "StepResultStatus",
    "TriggerType",
    # Database operations
    "create_execution",
    "get_execution",
    "get_latest_runbook",
    "get_runbook_version",
    "get_step_results",
    "list_logs",
    "save_runbook",
    # Substitution
    "resolve_step",
    "substitute_all",
]
