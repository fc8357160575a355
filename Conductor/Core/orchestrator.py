"""Execution orchestrator for runbooks.

The orchestrator owns the state machine of a single execution:

    QUEUED -> RUNNING -> SUCCESS | FAILED | CANCELLED | TIMEOUT | ERROR
                 ^  |
                 |  v
                PAUSED   (while a MANUAL step awaits a decision)

For each top-level step it checks the execution timeout and cancellation,
resolves templates, dispatches to the step's executor and applies the
step's failure policy (STOP, CONTINUE, RETRY, ROLLBACK). The step index and
the variables are persisted after every step, so a paused execution can be
picked up by any worker.

Store failures are engine failures, not step failures: they end the
execution in ERROR and never escape the calling thread.

Usage:
    from Conductor.Core.orchestrator import ExecutionOrchestrator

    orchestrator = ExecutionOrchestrator()
    orchestrator.run(execution_id)
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple, Optional

import Conductor.Core.runbook.db as runbook_db
import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.approvals import ApprovalGate, ApprovalStatus, PendingApproval
from Conductor.Core.exceptions import (
    ApprovalExpiredError,
    ConfigurationError,
    PersistenceError,
    SecretsError,
)
from Conductor.Core.logging_config import bind_execution_context
from Conductor.Core.metrics import (
    record_execution,
    record_execution_duration,
    record_step_outcome,
    record_step_retry,
)
from Conductor.Core.runbook.executors import StepExecutor, build_default_executors
from Conductor.Core.runbook.models import (
    Execution,
    ExecutionContext,
    ExecutionStatus,
    LogLevel,
    StepOutcome,
    StepOutcomeStatus,
    StepResult,
    StepResultStatus,
)
from Conductor.Core.runbook.substitution import resolve_step
from Conductor.Core.runbook_parser import (
    OnFailure,
    Runbook,
    RunbookStep,
    StepType,
)
from Conductor.Core.telemetry import get_tracer, mark_span_outcome, trace_id_of
from Conductor.Core.utils.datetime_helpers import ensure_aware, now as get_now
from Conductor.Core.vault import SecretVault
from config import Constants

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

tracer = get_tracer(__name__)


class _Halt(NamedTuple):
    """Why the step loop stopped."""

    status: ExecutionStatus
    error: Optional[str] = None
    error_step: Optional[str] = None


@dataclass
class _Run:
    """Everything one orchestration pass needs about its execution."""

    execution: Execution
    runbook: Runbook
    context: ExecutionContext
    completed: list[RunbookStep] = field(default_factory=list)

    @property
    def execution_id(self) -> int:
        return self.execution.execution_id or 0


class ExecutionOrchestrator:
    """
    Runs executions step by step and applies failure policies.

    Each call to run() or resume() works on its own ExecutionContext, so a
    single orchestrator can drive many executions from different threads.
    """

    def __init__(
        self,
        store: Any = None,
        vault: Optional[SecretVault] = None,
        gate: Optional[ApprovalGate] = None,
        executors: Optional[dict[StepType, StepExecutor]] = None,
    ):
        self.store = store if store is not None else runbook_db
        self.vault = vault if vault is not None else SecretVault()
        self.gate = gate if gate is not None else ApprovalGate()
        self.executors = executors if executors is not None else build_default_executors()

    # ========================================================================
    # Entry points
    # ========================================================================

    def run(
        self, execution_id: int, cancel_event: Optional[threading.Event] = None
    ) -> Optional[ExecutionStatus]:
        """
        Claim a QUEUED execution and run it.

        Returns:
            The status the execution ended (or paused) in, or None if the
            claim was lost to another worker
        """
        try:
            execution = self.store.claim_execution(execution_id, [ExecutionStatus.QUEUED])
        except PersistenceError as e:
            logger.log(level=40, msg=f"Could not claim execution {execution_id}: {e}")
            return None
        if execution is None:
            logger.log(level=10, msg=f"Execution {execution_id} not claimable (already taken)")
            return None
        return self._drive(execution, cancel_event, resuming=False)

    def run_claimed(
        self, execution: Execution, cancel_event: Optional[threading.Event] = None
    ) -> ExecutionStatus:
        """Run an execution that the caller has already moved to RUNNING."""
        return self._drive(execution, cancel_event, resuming=False)

    def resume(
        self, execution_id: int, cancel_event: Optional[threading.Event] = None
    ) -> Optional[ExecutionStatus]:
        """
        Claim a PAUSED execution and continue from its MANUAL step.

        Only one resumer can win the PAUSED -> RUNNING claim.
        """
        try:
            execution = self.store.claim_execution(execution_id, [ExecutionStatus.PAUSED])
        except PersistenceError as e:
            logger.log(level=40, msg=f"Could not claim execution {execution_id}: {e}")
            return None
        if execution is None:
            logger.log(level=10, msg=f"Execution {execution_id} not resumable")
            return None
        return self._drive(execution, cancel_event, resuming=True)

    def cancel(self, execution_id: int) -> bool:
        """
        Cancel an execution.

        QUEUED and PAUSED executions are cancelled immediately; a RUNNING
        execution is flagged and stops at its next step boundary.

        Returns:
            True if the execution was cancelled or flagged
        """
        if self.store.cancel_if_idle(execution_id):
            self.store.append_log(
                execution_id, None, LogLevel.INFO, "Execution cancelled", {}
            )
            logger.log(level=20, msg=f"Execution {execution_id} cancelled")
            self._close_approvals(execution_id)
            return True

        if self.store.request_cancel(execution_id):
            self.store.append_log(
                execution_id, None, LogLevel.INFO, "Cancellation requested", {}
            )
            logger.log(level=20, msg=f"Cancellation requested for execution {execution_id}")
            return True

        logger.log(
            level=30, msg=f"Execution {execution_id} is not active; nothing to cancel"
        )
        return False

    def _close_approvals(self, execution_id: int) -> None:
        """Expire approvals left open by a cancelled execution."""
        try:
            self.gate.close_for_execution(execution_id)
        except PersistenceError as e:
            logger.log(
                level=40,
                msg=f"Could not close approvals of cancelled execution {execution_id}: {e}",
            )

    # ========================================================================
    # Orchestration
    # ========================================================================

    def _drive(
        self,
        execution: Execution,
        cancel_event: Optional[threading.Event],
        resuming: bool,
    ) -> ExecutionStatus:
        execution_id = execution.execution_id or 0
        runbook_name = "unknown"

        with bind_execution_context(
            execution_id=execution_id, runbook_id=execution.runbook_id
        ), tracer.start_as_current_span("runbook.execution") as span:
            span.set_attribute("execution.id", execution_id)
            span.set_attribute("runbook.id", execution.runbook_id)
            span.set_attribute("runbook.version", execution.runbook_version)
            span.set_attribute("execution.resumed", resuming)

            try:
                runbook = self.store.get_runbook_version(
                    execution.runbook_id, execution.runbook_version
                )
                if runbook is None:
                    halt = _Halt(
                        ExecutionStatus.ERROR,
                        f"Runbook {execution.runbook_id} v{execution.runbook_version} not found",
                    )
                else:
                    runbook_name = runbook.name
                    run = _Run(
                        execution=execution,
                        runbook=runbook,
                        context=self._build_context(execution, cancel_event),
                    )
                    if resuming:
                        self._restore_progress(run)
                    self.store.append_log(
                        execution_id,
                        None,
                        LogLevel.INFO,
                        f"Execution {'resumed' if resuming else 'started'} "
                        f"(runbook '{runbook.name}' v{runbook.version})",
                        {"step_index": execution.current_step_index},
                    )
                    halt = self._execute_steps(run, resuming)
            except (PersistenceError, SecretsError, ConfigurationError) as e:
                logger.log(level=40, msg=f"Execution {execution_id} errored: {e}")
                halt = _Halt(ExecutionStatus.ERROR, str(e))
            except Exception as e:
                logger.log(
                    level=40,
                    msg=f"Unexpected error in execution {execution_id}: {e}",
                    exc_info=True,
                )
                halt = _Halt(ExecutionStatus.ERROR, f"Internal error: {e}")

            mark_span_outcome(span, halt.status.value, halt.error)
            if halt.status == ExecutionStatus.PAUSED:
                return halt.status

            self._finish(execution, runbook_name, halt, trace_id_of(span))
            return halt.status

    def _build_context(
        self, execution: Execution, cancel_event: Optional[threading.Event]
    ) -> ExecutionContext:
        secrets = self.vault.resolve_all_for_execution(
            execution.runbook_id, execution.environment
        )
        return ExecutionContext(
            execution_id=execution.execution_id or 0,
            runbook_id=execution.runbook_id,
            runbook_version=execution.runbook_version,
            environment=execution.environment,
            parameters=dict(execution.parameters),
            variables=dict(execution.variables),
            secrets=secrets,
            step_index=execution.current_step_index,
            cancel_event=cancel_event or threading.Event(),
            run_children=self._run_children,
            skip_child=self._record_skipped,
        )

    def _restore_progress(self, run: _Run) -> None:
        """Rebuild step statuses and the rollback list from recorded results."""
        succeeded: set[str] = set()
        for result in self.store.get_step_results(run.execution_id):
            if result.status == StepResultStatus.SUCCESS:
                run.context.record_step(result.step_id, True, result.output)
                succeeded.add(result.step_id)
            elif result.status == StepResultStatus.FAILURE:
                run.context.record_step(result.step_id, False, result.output)

        for step in run.runbook.steps[: run.execution.current_step_index]:
            if step.id in succeeded:
                run.completed.append(step)

    def _execute_steps(self, run: _Run, resuming: bool) -> _Halt:
        steps = run.runbook.steps
        index = run.execution.current_step_index

        if resuming and index < len(steps):
            halt = self._apply_approval_decision(run, steps[index], index)
            if halt is not None:
                return halt
            index += 1

        while index < len(steps):
            halt = self._check_boundaries(run)
            if halt is not None:
                return halt

            step = steps[index]
            run.context.step_index = index
            logger.log(
                level=20,
                msg=f"Execution {run.execution_id}: step {index + 1}/{len(steps)} "
                f"'{step.name}' ({step.step_type.value})",
            )

            outcome = self._run_step_with_policy(step, run.context)

            if outcome.status == StepOutcomeStatus.PENDING_APPROVAL:
                return self._pause_for_approval(run, step, index)

            halt = self._after_step(run, step, index, outcome)
            if halt is not None:
                return halt
            index += 1

        return _Halt(ExecutionStatus.SUCCESS)

    def _check_boundaries(self, run: _Run) -> Optional[_Halt]:
        """Execution timeout and cancellation, checked before every step."""
        timeout = run.runbook.timeout_seconds or Constants.DEFAULT_EXECUTION_TIMEOUT_SECONDS
        started_at = run.execution.started_at
        if started_at is not None:
            elapsed = (get_now() - ensure_aware(started_at)).total_seconds()
            if elapsed > timeout:
                return _Halt(
                    ExecutionStatus.TIMEOUT,
                    f"Execution exceeded its timeout of {timeout:g}s",
                )

        if run.context.cancelled or self.store.is_cancel_requested(run.execution_id):
            run.context.cancel_event.set()
            return _Halt(ExecutionStatus.CANCELLED, "Cancelled by request")
        return None

    def _after_step(
        self, run: _Run, step: RunbookStep, index: int, outcome: StepOutcome
    ) -> Optional[_Halt]:
        """Advance on success, otherwise apply the step's failure policy."""
        ctx = run.context

        if outcome.succeeded:
            ctx.record_step(step.id, True, outcome.output)
            if step.output_variable:
                ctx.set_variable(step.output_variable, outcome.output)
            run.completed.append(step)
            self.store.update_progress(run.execution_id, index + 1, ctx.variables)
            return None

        ctx.record_step(step.id, False, outcome.output)

        if ctx.cancelled:
            return _Halt(ExecutionStatus.CANCELLED, "Cancelled by request", step.id)

        if step.on_failure == OnFailure.CONTINUE:
            self.store.update_progress(run.execution_id, index + 1, ctx.variables)
            return None

        error = f"Step '{step.name}' failed: {outcome.error}"
        if step.on_failure == OnFailure.ROLLBACK:
            self._rollback(run)
        return _Halt(ExecutionStatus.FAILED, error, step.id)

    def _pause_for_approval(self, run: _Run, step: RunbookStep, index: int) -> _Halt:
        approval = self.gate.request(run.execution_id, step, index)
        if not self.store.pause_execution(run.execution_id, index):
            # A cancel or another transition got there first
            self._close_approvals(run.execution_id)
            return _Halt(ExecutionStatus.CANCELLED, "Cancelled while awaiting approval")

        self.store.append_log(
            run.execution_id,
            index,
            LogLevel.INFO,
            f"Execution paused at step '{step.name}' awaiting approval",
            {"step_id": step.id, "approval_id": approval.approval_id},
        )
        logger.log(
            level=20,
            msg=f"Execution {run.execution_id} paused for approval {approval.approval_id}",
        )
        return _Halt(ExecutionStatus.PAUSED)

    def _apply_approval_decision(
        self, run: _Run, step: RunbookStep, index: int
    ) -> Optional[_Halt]:
        """Turn the decision on a MANUAL step into that step's outcome."""
        decision = self.gate.get_decision(run.execution_id, index)
        if decision is None or decision.status == ApprovalStatus.PENDING:
            self.store.pause_execution(run.execution_id, index)
            return _Halt(ExecutionStatus.PAUSED)

        run.context.step_index = index
        outcome = self._outcome_from_decision(step, decision)
        started_at = decision.requested_at or get_now()
        self._record_attempt(step, run.context, 1, outcome, started_at, final=True)
        return self._after_step(run, step, index, outcome)

    @staticmethod
    def _outcome_from_decision(
        step: RunbookStep, decision: PendingApproval
    ) -> StepOutcome:
        output = {
            "approval_id": decision.approval_id,
            "status": decision.status.value,
            "responded_by": decision.responded_by,
            "note": decision.response_note,
        }
        if decision.status == ApprovalStatus.APPROVED:
            return StepOutcome.success(output)
        if decision.status == ApprovalStatus.EXPIRED:
            expired = ApprovalExpiredError(f"Approval for step '{step.name}' expired")
            return StepOutcome.failure(str(expired), output)
        return StepOutcome.failure(
            f"Rejected by {decision.responded_by}: {decision.response_note}", output
        )

    # ========================================================================
    # Steps
    # ========================================================================

    def _run_step_with_policy(
        self, step: RunbookStep, ctx: ExecutionContext
    ) -> StepOutcome:
        """Run a step, re-invoking it while its RETRY policy allows."""
        retry = step.retry_config
        max_attempts = max(1, retry.max_attempts) if step.on_failure == OnFailure.RETRY else 1

        attempt = 1
        while True:
            final = attempt >= max_attempts
            outcome = self._attempt(step, ctx, attempt, final)
            if not outcome.failed or final or ctx.cancelled:
                return outcome

            delay = retry.delay_seconds(attempt)
            record_step_retry(step.step_type.value)
            logger.log(
                level=20,
                msg=f"Retrying step '{step.id}' in {delay:g}s "
                f"(attempt {attempt + 1}/{max_attempts})",
            )
            if ctx.cancel_event.wait(delay):
                return outcome
            attempt += 1

    def _attempt(
        self, step: RunbookStep, ctx: ExecutionContext, attempt: int, final: bool
    ) -> StepOutcome:
        """One executor invocation, recorded as one result and one log entry."""
        started_at = get_now()
        started = time.monotonic()

        with bind_execution_context(
            execution_id=ctx.execution_id,
            runbook_id=ctx.runbook_id,
            step_id=step.id,
            attempt=attempt,
        ), tracer.start_as_current_span("runbook.step") as span:
            span.set_attribute("step.id", step.id)
            span.set_attribute("step.type", step.step_type.value)
            span.set_attribute("step.attempt", attempt)

            executor = self.executors.get(step.step_type)
            if executor is None:
                outcome = StepOutcome.failure(
                    f"No executor for step type {step.step_type.value}"
                )
            else:
                step_ctx = ctx.for_step(step.timeout_seconds)
                try:
                    resolved = resolve_step(step, step_ctx.bindings(), step_ctx.secrets)
                    outcome = executor(resolved, step_ctx)
                except PersistenceError:
                    raise
                except Exception as e:
                    error = ctx.redact(f"{type(e).__name__}: {e}")
                    logger.log(
                        level=30, msg=f"Executor for step '{step.id}' raised {error}"
                    )
                    outcome = StepOutcome.failure(error)

            outcome = self._redact_outcome(outcome, ctx)
            mark_span_outcome(span, outcome.status.value, outcome.error)

        record_step_outcome(
            step.step_type.value, outcome.status.value, time.monotonic() - started
        )
        self._record_attempt(step, ctx, attempt, outcome, started_at, final)
        return outcome

    @staticmethod
    def _redact_outcome(outcome: StepOutcome, ctx: ExecutionContext) -> StepOutcome:
        """Mask secret values before the outcome is logged, persisted or bound."""
        if not ctx.secrets:
            return outcome
        return StepOutcome(
            status=outcome.status,
            output=ctx.redact(outcome.output),
            error=ctx.redact(outcome.error),
        )

    def _record_attempt(
        self,
        step: RunbookStep,
        ctx: ExecutionContext,
        attempt: int,
        outcome: StepOutcome,
        started_at: datetime,
        final: bool,
    ) -> None:
        if outcome.status == StepOutcomeStatus.PENDING_APPROVAL:
            status = StepResultStatus.PENDING
            level = LogLevel.INFO
            message = f"Step '{step.name}' awaiting approval"
        elif outcome.succeeded:
            status = StepResultStatus.SUCCESS
            level = LogLevel.INFO
            message = f"Step '{step.name}' succeeded"
        else:
            status = StepResultStatus.FAILURE
            if not final or step.on_failure == OnFailure.CONTINUE:
                level = LogLevel.WARN
            else:
                level = LogLevel.ERROR
            message = f"Step '{step.name}' failed (attempt {attempt}): {outcome.error}"

        self.store.record_step_result(
            StepResult(
                result_id=None,
                execution_id=ctx.execution_id,
                step_index=ctx.step_index,
                step_id=step.id,
                step_name=step.name,
                step_type=step.step_type.value,
                status=status,
                output=outcome.output,
                error=outcome.error,
                attempt_number=attempt,
                started_at=started_at,
                finished_at=get_now(),
            )
        )
        self.store.append_log(
            ctx.execution_id,
            ctx.step_index,
            level,
            message,
            {
                "step_id": step.id,
                "step_type": step.step_type.value,
                "attempt": attempt,
                "error": outcome.error,
            },
        )

    def _run_children(
        self, steps: list[RunbookStep], ctx: ExecutionContext
    ) -> StepOutcome:
        """Child runner handed to PARALLEL and CONDITIONAL executors."""
        last = StepOutcome.success()
        for child in steps:
            if ctx.cancelled:
                return StepOutcome.failure("Cancelled")
            if ctx.expired:
                return StepOutcome.failure("Step timed out")

            outcome = self._run_step_with_policy(child, ctx)
            ctx.record_step(child.id, outcome.succeeded, outcome.output)

            if outcome.succeeded:
                if child.output_variable:
                    ctx.set_variable(child.output_variable, outcome.output)
                last = outcome
            elif child.on_failure != OnFailure.CONTINUE:
                return outcome
        return last

    def _record_skipped(self, step: RunbookStep, ctx: ExecutionContext) -> None:
        with ctx.lock:
            ctx.step_statuses[step.id] = StepResultStatus.SKIPPED.value
        finished_at = get_now()
        self.store.record_step_result(
            StepResult(
                result_id=None,
                execution_id=ctx.execution_id,
                step_index=ctx.step_index,
                step_id=step.id,
                step_name=step.name,
                step_type=step.step_type.value,
                status=StepResultStatus.SKIPPED,
                error="Skipped after a sibling failed",
                started_at=finished_at,
                finished_at=finished_at,
            )
        )

    def _rollback(self, run: _Run) -> None:
        """Run compensations of completed steps in reverse order, best-effort."""
        for step in reversed(run.completed):
            if not step.rollback:
                continue

            self.store.append_log(
                run.execution_id,
                run.context.step_index,
                LogLevel.INFO,
                f"Rolling back step '{step.name}'",
                {"step_id": step.id},
            )
            for compensation in step.rollback:
                outcome = self._attempt(compensation, run.context, 1, final=True)
                if not outcome.succeeded:
                    logger.log(
                        level=40,
                        msg=f"Rollback step '{compensation.id}' of '{step.id}' "
                        f"failed: {outcome.error}",
                    )

    # ========================================================================
    # Completion
    # ========================================================================

    def _finish(
        self,
        execution: Execution,
        runbook_name: str,
        halt: _Halt,
        trace_id: Optional[str],
    ) -> None:
        execution_id = execution.execution_id or 0
        try:
            transitioned = self.store.finish_execution(
                execution_id, halt.status, halt.error, halt.error_step
            )
            if not transitioned:
                logger.log(
                    level=30,
                    msg=f"Execution {execution_id} was already terminal; "
                    f"{halt.status.value} not applied",
                )
                return

            level = LogLevel.INFO if halt.status == ExecutionStatus.SUCCESS else LogLevel.ERROR
            message = f"Execution finished with status {halt.status.value}"
            if halt.error:
                message += f": {halt.error}"
            self.store.append_log(
                execution_id,
                None,
                level,
                message,
                {"status": halt.status.value, "error_step": halt.error_step},
            )
        except PersistenceError as e:
            logger.log(
                level=50,
                msg=f"Could not persist final status {halt.status.value} of "
                f"execution {execution_id}: {e}",
            )
            return

        logger.log(
            level=20 if halt.status == ExecutionStatus.SUCCESS else 30,
            msg=f"Execution {execution_id} finished: {halt.status.value}"
            + (f" ({halt.error})" if halt.error else ""),
        )
        record_execution(runbook_name, halt.status.value)
        if execution.started_at:
            duration = (get_now() - ensure_aware(execution.started_at)).total_seconds()
            record_execution_duration(runbook_name, duration, trace_id)
