"""Runbook engine facade.

Composes the store, vault, approval gate, orchestrator, execution pool and
scheduler, and exposes the operations an API or webhook layer needs.
There is no process-wide instance: whoever owns the process creates one
engine and calls start()/stop().

Usage:
    from Conductor.Core.engine import RunbookEngine

    engine = RunbookEngine()
    engine.start()
    execution = engine.enqueue_execution(runbook_id=1, parameters={"service": "api"})
    engine.approve(approval_id, approved_by="alice")
    engine.stop()
"""

import logging
from typing import Any, Optional, Union

import Conductor.Core.runbook.db as runbook_db
import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.approvals import ApprovalGate, ApprovalResult, PendingApproval
from Conductor.Core.exceptions import ConfigurationError
from Conductor.Core.metrics import record_enqueued
from Conductor.Core.orchestrator import ExecutionOrchestrator
from Conductor.Core.pool import ExecutionPool
from Conductor.Core.runbook.executors import StepExecutor
from Conductor.Core.runbook.models import Execution, LogEntry, StepResult, TriggerType
from Conductor.Core.runbook_parser import (
    Runbook,
    RunbookStatus,
    StepType,
    parse_runbook,
    parse_runbook_yaml,
)
from Conductor.Core.scheduler import Schedule, Scheduler
from Conductor.Core.vault import SecretType, SecretVault

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


class RunbookEngine:
    """Entry point for enqueueing, controlling and inspecting executions."""

    def __init__(
        self,
        store: Any = None,
        vault: Optional[SecretVault] = None,
        gate: Optional[ApprovalGate] = None,
        scheduler: Optional[Scheduler] = None,
        executors: Optional[dict[StepType, StepExecutor]] = None,
        max_workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.store = store if store is not None else runbook_db
        self.vault = vault if vault is not None else SecretVault()
        self.gate = gate if gate is not None else ApprovalGate()
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self.orchestrator = ExecutionOrchestrator(
            store=self.store, vault=self.vault, gate=self.gate, executors=executors
        )
        self.pool = ExecutionPool(
            self.orchestrator, max_workers=max_workers, poll_interval=poll_interval
        )

        self.gate.set_resume_callback(self._on_approval_decided)
        self.scheduler.set_enqueue_callback(self.enqueue_execution)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def running(self) -> bool:
        return self.pool.running

    def start(self) -> None:
        """
        Start the execution pool.

        Raises:
            ConfigurationError: If the vault has no master key
        """
        self.vault.check_configuration()
        self.pool.start()
        logger.log(level=20, msg="Runbook engine started")

    def stop(self, wait: bool = True) -> None:
        self.pool.stop(wait=wait)
        logger.log(level=20, msg="Runbook engine stopped")

    def _on_approval_decided(self, execution_id: int) -> None:
        if self.pool.running:
            self.pool.resume(execution_id)

    # ========================================================================
    # Runbooks
    # ========================================================================

    def save_runbook(
        self,
        definition: Union[Runbook, dict[str, Any], str],
        runbook_id: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> Runbook:
        """
        Validate and store a runbook definition.

        The definition may be a parsed Runbook, a dict, or YAML/JSON text.
        With runbook_id the definition becomes a new version of that runbook.

        Raises:
            RunbookParseError: If the definition is invalid
        """
        if isinstance(definition, Runbook):
            runbook = definition
        elif isinstance(definition, str):
            runbook = parse_runbook_yaml(definition)
        else:
            runbook = parse_runbook(definition)

        if runbook_id is not None:
            runbook.runbook_id = runbook_id
        return self.store.save_runbook(runbook, created_by=created_by)

    def get_runbook(self, runbook_id: int, version: Optional[int] = None) -> Optional[Runbook]:
        if version is None:
            return self.store.get_latest_runbook(runbook_id)
        return self.store.get_runbook_version(runbook_id, version)

    # ========================================================================
    # Executions
    # ========================================================================

    def enqueue_execution(
        self,
        runbook_id: int,
        parameters: Optional[dict[str, Any]] = None,
        environment: Optional[str] = None,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> Execution:
        """
        Enqueue an execution of the runbook's latest version.

        Raises:
            ConfigurationError: If the runbook does not exist, is archived,
                or the parameters do not match its declarations
        """
        runbook = self.store.get_latest_runbook(runbook_id)
        if runbook is None:
            raise ConfigurationError(f"Runbook {runbook_id} not found")
        if runbook.status == RunbookStatus.ARCHIVED:
            raise ConfigurationError(f"Runbook {runbook_id} is archived")

        try:
            trigger = TriggerType(trigger_type)
        except ValueError:
            raise ConfigurationError(f"Invalid trigger type '{trigger_type}'")

        bound = runbook.bind_parameters(parameters)
        execution = self.store.create_execution(
            runbook,
            parameters=bound,
            environment=environment or runbook.environment.value,
            trigger_type=trigger,
            triggered_by=triggered_by,
        )
        record_enqueued(trigger.value)

        if self.pool.running and execution.execution_id is not None:
            self.pool.submit(execution.execution_id)
        return execution

    def cancel_execution(self, execution_id: int) -> bool:
        return self.pool.cancel(execution_id)

    def get_execution(self, execution_id: int) -> Optional[Execution]:
        return self.store.get_execution(execution_id)

    def list_logs(self, execution_id: int) -> list[LogEntry]:
        return self.store.list_logs(execution_id)

    def list_step_results(self, execution_id: int) -> list[StepResult]:
        return self.store.get_step_results(execution_id)

    # ========================================================================
    # Approvals
    # ========================================================================

    def approve(
        self, approval_id: int, approved_by: str, comment: Optional[str] = None
    ) -> ApprovalResult:
        return self.gate.approve(approval_id, approved_by, comment)

    def reject(self, approval_id: int, rejected_by: str, reason: str) -> ApprovalResult:
        return self.gate.reject(approval_id, rejected_by, reason)

    def list_pending_approvals(
        self, execution_id: Optional[int] = None
    ) -> list[PendingApproval]:
        return self.gate.list_pending(execution_id)

    def expire_approvals(self) -> int:
        return self.gate.expire_due()

    # ========================================================================
    # Schedules
    # ========================================================================

    def create_schedule(self, runbook_id: int, name: str, frequency: Any, **kwargs: Any) -> Schedule:
        if self.store.get_latest_runbook(runbook_id) is None:
            raise ConfigurationError(f"Runbook {runbook_id} not found")
        return self.scheduler.create_schedule(runbook_id, name, frequency, **kwargs)

    def pause_schedule(self, schedule_id: int) -> bool:
        return self.scheduler.pause(schedule_id)

    def resume_schedule(self, schedule_id: int) -> Optional[Schedule]:
        return self.scheduler.resume(schedule_id)

    def run_scheduler(self) -> int:
        """Fire due schedules; returns the number of executions enqueued."""
        return self.scheduler.sweep()

    # ========================================================================
    # Secrets
    # ========================================================================

    def create_secret(
        self,
        name: str,
        plaintext: str,
        secret_type: Union[SecretType, str] = SecretType.OTHER,
        runbook_id: Optional[int] = None,
        environment: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> int:
        return self.vault.create(
            name,
            plaintext,
            secret_type=SecretType(secret_type),
            runbook_id=runbook_id,
            environment=environment,
            description=description,
            created_by=created_by,
        )

    def rotate_secret(self, secret_id: int, new_plaintext: str) -> int:
        return self.vault.rotate(secret_id, new_plaintext)
