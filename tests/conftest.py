"""Pytest configuration and shared fixtures."""
import os
import sys
import threading
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_MASTER_KEY = "test-master-key-not-for-production"


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Set up required environment variables for testing.

    This fixture is autouse=True so it runs for all tests automatically,
    ensuring database credentials and the vault master key are available.
    """
    env_vars = {
        "PG_USER": "test_user",
        "PG_PASS": "test_pass",
        "DB_NAME": "test_conductor",
        "DB_HOST": "localhost",
        "CONDUCTOR_MASTER_KEY": TEST_MASTER_KEY,
        "CONDUCTOR_MAX_WORKERS": "4",
        "CONDUCTOR_POLL_INTERVAL_SECONDS": "0.05",
    }
    with patch.dict(os.environ, env_vars):
        import config

        config.reload_config()
        yield env_vars
    import config

    config.reload_config()


@pytest.fixture
def mock_db_connection():
    """Mock database connection."""
    with patch("psycopg2.connect") as mock_connect:
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value = mock_cursor
        mock_connect.return_value = mock_conn
        yield {
            "connect": mock_connect,
            "connection": mock_conn,
            "cursor": mock_cursor,
        }


class FakeStore:
    """In-memory stand-in for Conductor.Core.runbook.db.

    Implements the same functions with the same transition guards, so the
    orchestrator and pool can be exercised without PostgreSQL.
    """

    def __init__(self):
        self.runbooks = {}
        self.executions = {}
        self.logs = []
        self.results = []
        self.progress = []
        self.resumable = []
        self._next_execution_id = 1
        self._next_runbook_id = 1
        self._lock = threading.RLock()

    # Runbooks

    def save_runbook(self, runbook, created_by=None):
        with self._lock:
            if runbook.runbook_id is None:
                runbook = replace(runbook, runbook_id=self._next_runbook_id, version=1)
                self._next_runbook_id += 1
            else:
                versions = [v for (rid, v) in self.runbooks if rid == runbook.runbook_id]
                runbook = replace(runbook, version=max(versions, default=0) + 1)
            if created_by:
                runbook.created_by = created_by
            self.runbooks[(runbook.runbook_id, runbook.version)] = runbook
            return runbook

    def get_latest_runbook(self, runbook_id):
        versions = [v for (rid, v) in self.runbooks if rid == runbook_id]
        if not versions:
            return None
        return self.runbooks[(runbook_id, max(versions))]

    def get_runbook_version(self, runbook_id, version):
        return self.runbooks.get((runbook_id, version))

    # Executions

    def create_execution(self, runbook, parameters, environment,
                         trigger_type=None, triggered_by=None):
        from Conductor.Core.runbook.models import Execution, ExecutionStatus, TriggerType

        with self._lock:
            execution = Execution(
                execution_id=self._next_execution_id,
                runbook_id=runbook.runbook_id,
                runbook_version=runbook.version,
                status=ExecutionStatus.QUEUED,
                trigger_type=trigger_type or TriggerType.MANUAL,
                triggered_by=triggered_by,
                environment=environment,
                parameters=dict(parameters),
                variables=dict(runbook.variables),
                total_steps=runbook.count_steps(),
            )
            self._next_execution_id += 1
            self.executions[execution.execution_id] = execution
            return replace(execution)

    def get_execution(self, execution_id):
        execution = self.executions.get(execution_id)
        return replace(execution) if execution else None

    def claim_execution(self, execution_id, from_statuses):
        from Conductor.Core.runbook.models import ExecutionStatus
        from Conductor.Core.utils.datetime_helpers import now

        with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None or execution.status not in list(from_statuses):
                return None
            execution.status = ExecutionStatus.RUNNING
            execution.started_at = execution.started_at or now()
            return replace(execution)

    def claim_next_queued(self):
        from Conductor.Core.runbook.models import ExecutionStatus

        with self._lock:
            for execution_id in sorted(self.executions):
                if self.executions[execution_id].status == ExecutionStatus.QUEUED:
                    return self.claim_execution(execution_id, [ExecutionStatus.QUEUED])
        return None

    def update_progress(self, execution_id, current_step_index, variables):
        from Conductor.Core.runbook.models import ExecutionStatus

        with self._lock:
            execution = self.executions[execution_id]
            if execution.status != ExecutionStatus.RUNNING:
                return
            execution.current_step_index = max(
                execution.current_step_index, current_step_index
            )
            execution.variables = dict(variables)
            self.progress.append((execution_id, execution.current_step_index))

    def requeue_execution(self, execution_id):
        from Conductor.Core.runbook.models import ExecutionStatus

        with self._lock:
            execution = self.executions[execution_id]
            if execution.status != ExecutionStatus.RUNNING:
                return False
            execution.status = ExecutionStatus.QUEUED
            execution.started_at = None
            return True

    def pause_execution(self, execution_id, current_step_index):
        from Conductor.Core.runbook.models import ExecutionStatus

        with self._lock:
            execution = self.executions[execution_id]
            if execution.status != ExecutionStatus.RUNNING:
                return False
            execution.status = ExecutionStatus.PAUSED
            execution.current_step_index = current_step_index
            return True

    def finish_execution(self, execution_id, status, error_message=None, error_step=None):
        from Conductor.Core.runbook.models import ExecutionStatus
        from Conductor.Core.utils.datetime_helpers import now

        with self._lock:
            execution = self.executions[execution_id]
            if ExecutionStatus.is_terminal(execution.status):
                return False
            execution.status = status
            execution.error_message = error_message
            execution.error_step = error_step
            execution.finished_at = now()
            return True

    def cancel_if_idle(self, execution_id):
        from Conductor.Core.runbook.models import ExecutionStatus

        with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None or execution.status not in (
                ExecutionStatus.QUEUED, ExecutionStatus.PAUSED
            ):
                return False
            execution.status = ExecutionStatus.CANCELLED
            execution.error_message = "Cancelled by request"
            return True

    def request_cancel(self, execution_id):
        from Conductor.Core.runbook.models import ExecutionStatus

        with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                return False
            execution.cancel_requested = True
            return True

    def is_cancel_requested(self, execution_id):
        return self.executions[execution_id].cancel_requested

    def get_cancel_requested(self, execution_ids):
        return {i for i in execution_ids if self.executions[i].cancel_requested}

    def get_resumable_executions(self):
        with self._lock:
            ready, self.resumable = list(self.resumable), []
            return ready

    # Logs and results

    def append_log(self, execution_id, step_index, level, message, metadata=None):
        from Conductor.Core.runbook.models import LogEntry

        with self._lock:
            self.logs.append(
                LogEntry(
                    log_id=len(self.logs) + 1,
                    execution_id=execution_id,
                    step_index=step_index,
                    level=level,
                    message=message,
                    metadata=metadata or {},
                )
            )

    def list_logs(self, execution_id):
        return [log for log in self.logs if log.execution_id == execution_id]

    def step_logs(self, execution_id):
        return [
            log for log in self.list_logs(execution_id)
            if log.metadata.get("step_id") and "attempt" in log.metadata
        ]

    def record_step_result(self, result):
        with self._lock:
            stored = replace(result, result_id=len(self.results) + 1)
            self.results.append(stored)
            return stored

    def get_step_results(self, execution_id):
        return [r for r in self.results if r.execution_id == execution_id]


class FakeVault:
    """Vault stand-in that hands out a fixed secret map."""

    def __init__(self, secrets=None):
        self.secrets = dict(secrets or {})
        self.calls = []

    def resolve_all_for_execution(self, runbook_id, environment):
        self.calls.append((runbook_id, environment))
        return dict(self.secrets)

    def check_configuration(self):
        return None


class FakeGate:
    """Approval gate stand-in: requests are remembered, decisions are set by tests."""

    def __init__(self):
        self.requests = []
        self.decisions = {}
        self._resume_callback = None

    def set_resume_callback(self, callback):
        self._resume_callback = callback

    def request(self, execution_id, step, step_index):
        from Conductor.Core.approvals import ApprovalStatus, PendingApproval

        approval = PendingApproval(
            approval_id=len(self.requests) + 1,
            execution_id=execution_id,
            step_index=step_index,
            step_name=step.name,
            status=ApprovalStatus.PENDING,
        )
        self.requests.append(approval)
        self.decisions[(execution_id, step_index)] = approval
        return approval

    def decide(self, execution_id, step_index, status, responded_by="alice", note=None):
        approval = self.decisions[(execution_id, step_index)]
        approval.status = status
        approval.responded_by = responded_by
        approval.response_note = note

    def get_decision(self, execution_id, step_index):
        return self.decisions.get((execution_id, step_index))

    def close_for_execution(self, execution_id, note="Execution cancelled"):
        from Conductor.Core.approvals import ApprovalStatus

        closed = 0
        for (eid, _), approval in self.decisions.items():
            if eid == execution_id and approval.status == ApprovalStatus.PENDING:
                approval.status = ApprovalStatus.EXPIRED
                approval.response_note = note
                closed += 1
        return closed


@pytest.fixture
def fake_store():
    """In-memory runbook/execution store."""
    return FakeStore()


@pytest.fixture
def fake_vault():
    """Vault returning a fixed secret map."""
    return FakeVault({"API_TOKEN": "s3cr3t"})


@pytest.fixture
def fake_gate():
    """Approval gate without a database."""
    return FakeGate()


@pytest.fixture
def make_runbook(fake_store):
    """Parse a list of step dicts and store it as runbook version 1."""

    def _make(steps, name="test-runbook", **extra):
        from Conductor.Core.runbook_parser import parse_runbook

        runbook = parse_runbook({"name": name, "steps": steps, **extra})
        return fake_store.save_runbook(runbook)

    return _make
