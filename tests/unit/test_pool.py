"""Unit tests for the execution pool."""
import threading
import time

import pytest


def wait_for(predicate, timeout=5.0):
    """Poll until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class BlockingExecutor:
    """Executor that holds its step until released or cancelled."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, step, context):
        from Conductor.Core.runbook.models import StepOutcome

        self.started.set()
        while not self.release.is_set():
            if context.cancel_event.wait(0.01):
                return StepOutcome.failure("Cancelled while running")
        return StepOutcome.success()


@pytest.fixture
def blocking():
    executor = BlockingExecutor()
    yield executor
    executor.release.set()


@pytest.fixture
def make_pool(fake_store, fake_vault, fake_gate):
    """Build a pool over the in-memory fakes; stops it afterwards."""
    pools = []

    def _make(executors, max_workers=4):
        from Conductor.Core.orchestrator import ExecutionOrchestrator
        from Conductor.Core.pool import ExecutionPool

        orchestrator = ExecutionOrchestrator(
            store=fake_store, vault=fake_vault, gate=fake_gate, executors=executors
        )
        pool = ExecutionPool(orchestrator, max_workers=max_workers, poll_interval=0.02)
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        pool.stop(wait=True, cancel_in_flight=True)


def _shell_runbook(make_runbook):
    return make_runbook([{"id": "work", "name": "work", "type": "SHELL", "command": "true"}])


class TestPoolLifecycle:
    """Tests for start/stop and configuration."""

    def test_defaults_from_config(self):
        """Test max_workers and poll interval default to the worker config."""
        from Conductor.Core.orchestrator import ExecutionOrchestrator
        from Conductor.Core.pool import ExecutionPool

        pool = ExecutionPool(ExecutionOrchestrator(store=object(), vault=object(),
                                                   gate=object(), executors={}))

        assert pool.max_workers == 4
        assert pool.poll_interval == 0.05

    def test_submit_when_not_running(self, make_pool, make_runbook, fake_store):
        """Test a stopped pool refuses work and leaves it QUEUED."""
        from Conductor.Core.runbook.models import ExecutionStatus

        pool = make_pool({})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)

        assert pool.submit(execution.execution_id) is False
        assert fake_store.executions[execution.execution_id].status == ExecutionStatus.QUEUED

    def test_start_is_idempotent(self, make_pool):
        """Test starting twice keeps one executor."""
        pool = make_pool({})
        pool.start(poll=False)
        executor = pool._executor

        pool.start(poll=False)

        assert pool._executor is executor
        assert pool.running


class TestDispatch:
    """Tests for submit, poll and capacity."""

    def test_submit_runs_execution(self, make_pool, make_runbook, fake_store):
        """Test a submitted execution runs to completion."""
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: lambda step, ctx: StepOutcome.success()})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)

        assert pool.submit(execution.execution_id) is True
        pool.stop(wait=True)

        assert fake_store.executions[execution.execution_id].status == ExecutionStatus.SUCCESS
        assert pool.in_flight() == []

    def test_duplicate_submit_is_ignored(self, make_pool, make_runbook, fake_store, blocking):
        """Test an execution already in flight is not dispatched twice."""
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: blocking})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)

        assert pool.submit(execution.execution_id) is True
        assert blocking.started.wait(5)
        assert pool.submit(execution.execution_id) is False

    def test_poll_claims_queued_executions(self, make_pool, make_runbook, fake_store):
        """Test poll_once claims every queued execution it has room for."""
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: lambda step, ctx: StepOutcome.success()})
        runbook = _shell_runbook(make_runbook)
        ids = [fake_store.create_execution(runbook, {}, None).execution_id for _ in range(3)]
        pool.start(poll=False)

        assert pool.poll_once() == 3
        pool.stop(wait=True)

        assert all(fake_store.executions[i].status == ExecutionStatus.SUCCESS for i in ids)

    def test_poll_respects_capacity(self, make_pool, make_runbook, fake_store, blocking):
        """Test a full pool leaves the rest of the queue alone."""
        from Conductor.Core.runbook.models import ExecutionStatus
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: blocking}, max_workers=1)
        runbook = _shell_runbook(make_runbook)
        first = fake_store.create_execution(runbook, {}, None)
        second = fake_store.create_execution(runbook, {}, None)
        pool.start(poll=False)

        assert pool.poll_once() == 1
        assert pool.has_capacity() is False
        assert fake_store.executions[first.execution_id].status == ExecutionStatus.RUNNING
        assert fake_store.executions[second.execution_id].status == ExecutionStatus.QUEUED

    def test_background_poll_loop(self, make_pool, make_runbook, fake_store):
        """Test the poll thread picks up queued work by itself."""
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: lambda step, ctx: StepOutcome.success()})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start()

        assert wait_for(
            lambda: fake_store.executions[execution.execution_id].status
            == ExecutionStatus.SUCCESS
        )

    def test_executions_run_concurrently(self, make_pool, make_runbook, fake_store, blocking):
        """Test one slow execution does not block another."""
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        def by_id(step, ctx):
            if step.id == "slow":
                return blocking(step, ctx)
            return StepOutcome.success()

        pool = make_pool({StepType.SHELL: by_id})
        slow = fake_store.create_execution(
            make_runbook([{"id": "slow", "name": "slow", "type": "SHELL", "command": "true"}]),
            {}, None,
        )
        fast = fake_store.create_execution(
            make_runbook([{"id": "fast", "name": "fast", "type": "SHELL", "command": "true"}],
                         name="fast-runbook"),
            {}, None,
        )
        pool.start(poll=False)

        pool.submit(slow.execution_id)
        assert blocking.started.wait(5)
        pool.submit(fast.execution_id)

        assert wait_for(
            lambda: fake_store.executions[fast.execution_id].status == ExecutionStatus.SUCCESS
        )
        assert fake_store.executions[slow.execution_id].status == ExecutionStatus.RUNNING


class TestUndispatchedClaims:
    """Tests for executions claimed by a pool that can no longer run them."""

    def test_submit_racing_stop_requeues(self, make_pool, make_runbook, fake_store):
        """Test a claim followed by a concurrent stop goes back to QUEUED."""
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: lambda step, ctx: StepOutcome.success()})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)
        claim = fake_store.claim_execution

        def claim_then_stop(execution_id, from_statuses):
            claimed = claim(execution_id, from_statuses)
            pool._stop_event.set()
            return claimed

        fake_store.claim_execution = claim_then_stop

        assert pool.submit(execution.execution_id) is False
        stored = fake_store.executions[execution.execution_id]
        assert stored.status == ExecutionStatus.QUEUED
        assert stored.started_at is None
        assert pool.in_flight() == []

    def test_poll_racing_stop_requeues(self, make_pool, make_runbook, fake_store):
        """Test poll_once hands back the execution it claimed during a stop."""
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: lambda step, ctx: StepOutcome.success()})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)
        claim_next = fake_store.claim_next_queued

        def claim_then_stop():
            claimed = claim_next()
            pool._stop_event.set()
            return claimed

        fake_store.claim_next_queued = claim_then_stop

        assert pool.poll_once() == 0
        assert fake_store.executions[execution.execution_id].status == ExecutionStatus.QUEUED

    def test_executor_already_shut_down(self, make_pool, make_runbook, fake_store):
        """Test a thread pool that refuses work leaves the execution QUEUED."""
        from unittest.mock import MagicMock

        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: lambda step, ctx: StepOutcome.success()})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)
        real_executor = pool._executor
        pool._executor = MagicMock()
        pool._executor.submit.side_effect = RuntimeError(
            "cannot schedule new futures after shutdown"
        )

        try:
            assert pool.submit(execution.execution_id) is False
        finally:
            pool._executor = real_executor

        assert fake_store.executions[execution.execution_id].status == ExecutionStatus.QUEUED
        assert pool.in_flight() == []


class TestCancellation:
    """Tests for cancelling in-flight executions."""

    def test_cancel_in_flight_execution(self, make_pool, make_runbook, fake_store, blocking):
        """Test pool.cancel interrupts the running step."""
        from Conductor.Core.runbook.models import ExecutionStatus
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: blocking})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)
        pool.submit(execution.execution_id)
        assert blocking.started.wait(5)

        pool.cancel(execution.execution_id)

        assert wait_for(
            lambda: fake_store.executions[execution.execution_id].status
            == ExecutionStatus.CANCELLED
        )

    def test_sync_forwards_store_cancel_flags(
        self, make_pool, make_runbook, fake_store, blocking
    ):
        """Test a cancel flagged by another process reaches the running step."""
        from Conductor.Core.runbook.models import ExecutionStatus
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({StepType.SHELL: blocking})
        execution = fake_store.create_execution(_shell_runbook(make_runbook), {}, None)
        pool.start(poll=False)
        pool.submit(execution.execution_id)
        assert blocking.started.wait(5)

        fake_store.request_cancel(execution.execution_id)
        assert pool.sync_cancellations() == 1

        assert wait_for(
            lambda: fake_store.executions[execution.execution_id].status
            == ExecutionStatus.CANCELLED
        )


class TestResume:
    """Tests for resuming paused executions."""

    def test_poll_resumes_decided_executions(
        self, make_pool, make_runbook, fake_store, fake_gate
    ):
        """Test executions reported resumable by the store are resumed."""
        from Conductor.Core.approvals import ApprovalStatus
        from Conductor.Core.runbook.executors.manual import execute_manual_step
        from Conductor.Core.runbook.models import ExecutionStatus, StepOutcome
        from Conductor.Core.runbook_parser import StepType

        pool = make_pool({
            StepType.MANUAL: execute_manual_step,
            StepType.SHELL: lambda step, ctx: StepOutcome.success(),
        })
        runbook = make_runbook([
            {"id": "ok", "name": "ok", "type": "MANUAL"},
            {"id": "after", "name": "after", "type": "SHELL", "command": "true"},
        ])
        execution = fake_store.create_execution(runbook, {}, None)
        pool.start(poll=False)
        pool.submit(execution.execution_id)
        assert wait_for(
            lambda: fake_store.executions[execution.execution_id].status
            == ExecutionStatus.PAUSED
        )
        assert wait_for(lambda: pool.in_flight() == [])

        fake_gate.decide(execution.execution_id, 0, ApprovalStatus.APPROVED)
        fake_store.resumable.append(execution.execution_id)

        assert pool.poll_once() == 1
        assert wait_for(
            lambda: fake_store.executions[execution.execution_id].status
            == ExecutionStatus.SUCCESS
        )
