"""Runbook execution data models.

This module contains the core data models for runbook execution:
- ExecutionStatus: Enum for execution states
- TriggerType: How an execution was started
- StepOutcome: What a step executor hands back to the orchestrator
- StepResult: Persisted record of one attempt of one step
- LogEntry: Append-only execution log line
- Execution: A single run of a specific runbook version
- ExecutionContext: Runtime bindings shared by the steps of one execution

Usage:
    from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome

    outcome = StepOutcome.failure("connection refused")
"""

import dataclasses
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from Conductor.Core.runbook.substitution import redact_secrets
from Conductor.Core.utils.datetime_helpers import isoformat

if TYPE_CHECKING:
    from Conductor.Core.runbook_parser import RunbookStep


class ExecutionStatus(str, Enum):
    """Status of a runbook execution.

    States:
        QUEUED: Enqueued, waiting for a worker to claim it
        RUNNING: Claimed by a worker, steps are being executed
        PAUSED: Suspended on a MANUAL step awaiting a decision
        SUCCESS: All steps finished (or failed with CONTINUE)
        FAILED: A failure policy halted the execution
        CANCELLED: Cancelled by an external request
        TIMEOUT: The execution timeout elapsed
        ERROR: The engine itself failed (e.g. persistence)
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"

    @classmethod
    def is_terminal(cls, status: "ExecutionStatus") -> bool:
        """Check if status is a terminal state."""
        return status in (
            cls.SUCCESS, cls.FAILED, cls.CANCELLED, cls.TIMEOUT, cls.ERROR
        )

    @classmethod
    def is_active(cls, status: "ExecutionStatus") -> bool:
        """Check if status is a non-terminal state."""
        return status in (cls.QUEUED, cls.RUNNING, cls.PAUSED)


class TriggerType(str, Enum):
    """How an execution was started."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    API = "api"


class StepOutcomeStatus(str, Enum):
    """Outcome reported by a step executor."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class StepResultStatus(str, Enum):
    """Status of a persisted step result."""

    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    SKIPPED = "skipped"


class LogLevel(str, Enum):
    """Severity of an execution log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class StepOutcome:
    """Result of running a step executor once."""

    status: StepOutcomeStatus
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, output: Any = None) -> "StepOutcome":
        return cls(status=StepOutcomeStatus.SUCCESS, output=output)

    @classmethod
    def failure(cls, error: str, output: Any = None) -> "StepOutcome":
        return cls(status=StepOutcomeStatus.FAILURE, output=output, error=error)

    @classmethod
    def pending_approval(cls) -> "StepOutcome":
        return cls(status=StepOutcomeStatus.PENDING_APPROVAL)

    @property
    def succeeded(self) -> bool:
        return self.status == StepOutcomeStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == StepOutcomeStatus.FAILURE


@dataclass
class StepResult:
    """Result of one attempt of one step.

    Attributes:
        result_id: Database ID for this result record
        execution_id: ID of the parent execution
        step_index: Index of the top-level step this attempt belongs to
        step_id: ID of the step (a child ID for PARALLEL/CONDITIONAL children)
        step_name: Name of the step
        step_type: Type of the step
        status: Outcome of the attempt
        output: Output of the step (JSON-serializable)
        error: Error message if the attempt failed
        attempt_number: 1-based attempt counter (RETRY increments it)
        started_at: When the attempt started
        finished_at: When the attempt finished
    """

    result_id: Optional[int]
    execution_id: int
    step_index: int
    step_id: str
    step_name: str
    step_type: str
    status: StepResultStatus
    output: Any = None
    error: Optional[str] = None
    attempt_number: int = 1
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "result_id": self.result_id,
            "execution_id": self.execution_id,
            "step_index": self.step_index,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "step_type": self.step_type,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "attempt_number": self.attempt_number,
            "started_at": isoformat(self.started_at),
            "finished_at": isoformat(self.finished_at),
        }


@dataclass
class LogEntry:
    """Append-only execution log line."""

    log_id: Optional[int]
    execution_id: int
    step_index: Optional[int]
    level: LogLevel
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "execution_id": self.execution_id,
            "step_index": self.step_index,
            "level": self.level.value,
            "message": self.message,
            "metadata": self.metadata,
            "created_at": isoformat(self.created_at),
        }


@dataclass
class Execution:
    """Represents one run of a specific runbook version.

    Attributes:
        execution_id: Database ID for this execution record
        runbook_id: ID of the runbook being executed
        runbook_version: Version of the runbook pinned at enqueue time
        status: Current execution status
        trigger_type: How the execution was started
        triggered_by: User or system that started the execution
        environment: Environment the execution targets
        parameters: Resolved parameter bindings
        variables: Accumulated variable bindings (persisted after every step)
        current_step_index: Index of the current/next top-level step
        total_steps: Number of steps in the runbook, nested steps included
        error_message: Why the execution failed, if it did
        error_step: ID of the step that failed the execution
        cancel_requested: Set when a cancel arrives while RUNNING
    """

    execution_id: Optional[int]
    runbook_id: int
    runbook_version: int
    status: ExecutionStatus
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: Optional[str] = None
    environment: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    current_step_index: int = 0
    total_steps: int = 0
    error_message: Optional[str] = None
    error_step: Optional[str] = None
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "execution_id": self.execution_id,
            "runbook_id": self.runbook_id,
            "runbook_version": self.runbook_version,
            "status": self.status.value,
            "trigger_type": self.trigger_type.value,
            "triggered_by": self.triggered_by,
            "environment": self.environment,
            "parameters": self.parameters,
            "variables": self.variables,
            "current_step_index": self.current_step_index,
            "total_steps": self.total_steps,
            "error_message": self.error_message,
            "error_step": self.error_step,
            "cancel_requested": self.cancel_requested,
            "started_at": isoformat(self.started_at),
            "finished_at": isoformat(self.finished_at),
            "created_at": isoformat(self.created_at),
        }


# Smallest timeout handed to a subprocess or HTTP client once a deadline is near
MIN_TIME_BUDGET = 0.01

# Runs a list of child steps and returns the aggregate outcome
ChildRunner = Callable[[list["RunbookStep"], "ExecutionContext"], StepOutcome]

# Records a child step that was never started
SkipRecorder = Callable[["RunbookStep", "ExecutionContext"], None]


@dataclass
class ExecutionContext:
    """Runtime bindings for the steps of one execution.

    Each execution gets its own context; nothing in it is shared with
    another execution. Children of a PARALLEL step share their parent's
    context, so variable and status writes go through `lock`.

    `deadline` is a time.monotonic() value bounding the step being
    dispatched. The orchestrator hands each executor a copy of the context
    with the step's deadline (see for_step); nested steps can only shorten it.
    """

    execution_id: int
    runbook_id: int
    runbook_version: int
    environment: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    step_statuses: dict[str, str] = field(default_factory=dict)
    step_outputs: dict[str, Any] = field(default_factory=dict)
    step_index: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    run_children: Optional[ChildRunner] = None
    skip_child: Optional[SkipRecorder] = None
    lock: threading.RLock = field(default_factory=threading.RLock)
    deadline: Optional[float] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def time_budget(self, timeout_seconds: float) -> float:
        """A step timeout cut down to what is left of the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout_seconds
        return max(MIN_TIME_BUDGET, min(timeout_seconds, remaining))

    def for_step(self, timeout_seconds: Optional[float]) -> "ExecutionContext":
        """
        Copy of this context bounded by a step timeout.

        The copy shares the bindings, lock and cancel event; only the
        deadline differs.
        """
        if not timeout_seconds:
            return self
        deadline = time.monotonic() + timeout_seconds
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return dataclasses.replace(self, deadline=deadline)

    def redact(self, value: Any) -> Any:
        """Mask this execution's secret values in text, dicts or lists."""
        return redact_secrets(value, self.secrets)

    def bindings(self) -> dict[str, Any]:
        """Template bindings: variables overlaid by parameters."""
        with self.lock:
            merged = dict(self.variables)
            merged.update(self.parameters)
            merged.setdefault("EXECUTION_ID", self.execution_id)
            merged.setdefault("RUNBOOK_ID", self.runbook_id)
            merged.setdefault("RUNBOOK_VERSION", self.runbook_version)
            if self.environment:
                merged.setdefault("ENVIRONMENT", self.environment)
            return merged

    def set_variable(self, name: str, value: Any) -> None:
        with self.lock:
            self.variables[name] = value

    def record_step(self, step_id: str, succeeded: bool, output: Any = None) -> None:
        with self.lock:
            self.step_statuses[step_id] = "success" if succeeded else "failure"
            self.step_outputs[step_id] = output
