"""Unit tests for metrics module."""
import os
from unittest.mock import patch


def _sample(name, labels=None):
    from prometheus_client import REGISTRY

    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestGetConfig:
    """Tests for _get_config function."""

    def test_returns_default_values_when_no_env_vars(self):
        """Should return default configuration when no env vars are set."""
        with patch.dict(os.environ, {}, clear=True):
            from Conductor.Core.metrics import _get_config

            config = _get_config()

            assert config["service_name"] == "conductor"
            assert config["environment"] == "development"
            assert config["version"] == "unknown"

    def test_returns_custom_values_from_env(self):
        """Should use OTEL_SERVICE_NAME and the CONDUCTOR_* variables."""
        env = {
            "OTEL_SERVICE_NAME": "conductor-worker",
            "CONDUCTOR_ENVIRONMENT": "production",
            "CONDUCTOR_VERSION": "1.2.3",
        }
        with patch.dict(os.environ, env):
            from Conductor.Core.metrics import _get_config

            config = _get_config()

            assert config["service_name"] == "conductor-worker"
            assert config["environment"] == "production"
            assert config["version"] == "1.2.3"


class TestBuildExemplar:
    """Tests for _build_exemplar function."""

    def test_returns_exemplar_dict_with_trace_id(self):
        """Should return dict with trace_id when provided."""
        from Conductor.Core.metrics import _build_exemplar

        assert _build_exemplar("abc123def456") == {"trace_id": "abc123def456"}

    def test_returns_none_without_trace_id(self):
        """Should return None when trace_id is None or empty."""
        from Conductor.Core.metrics import _build_exemplar

        assert _build_exemplar(None) is None
        assert _build_exemplar("") is None


class TestExecutionMetrics:
    """Tests for execution counters and histograms."""

    def test_record_execution(self):
        """Should count executions by runbook and final status."""
        from Conductor.Core.metrics import record_execution

        labels = {"runbook": "restart-api", "status": "SUCCESS", "service_name": "conductor"}
        before = _sample("conductor_runbook_executions_total", labels)

        record_execution("restart-api", "SUCCESS")

        assert _sample("conductor_runbook_executions_total", labels) == before + 1

    def test_record_execution_duration(self):
        """Should observe the duration in the runbook histogram."""
        from Conductor.Core.metrics import record_execution_duration

        labels = {"runbook": "drain-node", "service_name": "conductor"}
        before = _sample("conductor_runbook_execution_duration_seconds_count", labels)

        record_execution_duration("drain-node", 12.5, trace_id="abc123")

        after = _sample("conductor_runbook_execution_duration_seconds_count", labels)
        assert after == before + 1

    @patch("Conductor.Core.metrics.RUNBOOK_EXECUTION_DURATION")
    def test_duration_exemplar_passed_through(self, mock_histogram):
        """Should attach the trace id as an exemplar."""
        from Conductor.Core.metrics import record_execution_duration

        record_execution_duration("drain-node", 3.0, trace_id="trace-1")

        mock_histogram.labels.return_value.observe.assert_called_once_with(
            3.0, exemplar={"trace_id": "trace-1"}
        )

    def test_record_enqueued(self):
        """Should count enqueued executions by trigger type."""
        from Conductor.Core.metrics import record_enqueued

        before = _sample("conductor_executions_enqueued_total", {"trigger_type": "webhook"})

        record_enqueued("webhook")

        after = _sample("conductor_executions_enqueued_total", {"trigger_type": "webhook"})
        assert after == before + 1

    def test_update_in_flight_count(self):
        """Should set the in-flight gauge."""
        from Conductor.Core.metrics import update_in_flight_count

        update_in_flight_count(3)

        assert _sample("conductor_executions_in_flight") == 3


class TestStepAndApprovalMetrics:
    """Tests for step, approval and scheduler metrics."""

    def test_record_step_outcome(self):
        """Should count the outcome and observe the step duration."""
        from Conductor.Core.metrics import record_step_outcome

        labels = {"step_type": "HTTP", "outcome": "failed"}
        before = _sample("conductor_step_outcomes_total", labels)
        before_count = _sample("conductor_step_duration_seconds_count", {"step_type": "HTTP"})

        record_step_outcome("HTTP", "failed", 0.2)

        assert _sample("conductor_step_outcomes_total", labels) == before + 1
        after_count = _sample("conductor_step_duration_seconds_count", {"step_type": "HTTP"})
        assert after_count == before_count + 1

    def test_record_step_retry(self):
        """Should count retries per step type."""
        from Conductor.Core.metrics import record_step_retry

        before = _sample("conductor_step_retries_total", {"step_type": "SHELL"})

        record_step_retry("SHELL")

        assert _sample("conductor_step_retries_total", {"step_type": "SHELL"}) == before + 1

    def test_approval_metrics(self):
        """Should track pending approvals and decisions."""
        from Conductor.Core.metrics import record_approval_decision, update_pending_approval_count

        before = _sample("conductor_approval_decisions_total", {"decision": "APPROVED"})

        update_pending_approval_count(2)
        record_approval_decision("APPROVED")

        assert _sample("conductor_approvals_pending") == 2
        after = _sample("conductor_approval_decisions_total", {"decision": "APPROVED"})
        assert after == before + 1

    def test_scheduler_metrics(self):
        """Should count fired schedules and lost claims."""
        from Conductor.Core.metrics import record_schedule_conflict, record_schedule_fired

        fired_before = _sample("conductor_schedules_fired_total", {"frequency": "DAILY"})
        conflicts_before = _sample("conductor_schedule_claim_conflicts_total")

        record_schedule_fired("DAILY")
        record_schedule_conflict()

        assert _sample("conductor_schedules_fired_total", {"frequency": "DAILY"}) == (
            fired_before + 1
        )
        assert _sample("conductor_schedule_claim_conflicts_total") == conflicts_before + 1


class TestExposition:
    """Tests for get_metrics and get_metrics_content_type."""

    def test_openmetrics_output(self):
        """Should render OpenMetrics text ending with EOF."""
        from Conductor.Core.metrics import get_metrics, get_metrics_content_type

        output = get_metrics()

        assert b"conductor_build_info" in output
        assert output.rstrip().endswith(b"# EOF")
        assert get_metrics_content_type().startswith("application/openmetrics-text")

    def test_prometheus_output(self):
        """Should render the classic Prometheus text format."""
        from Conductor.Core.metrics import get_metrics, get_metrics_content_type

        output = get_metrics(openmetrics=False)

        assert b"conductor_executions_in_flight" in output
        assert get_metrics_content_type(openmetrics=False).startswith("text/plain")
