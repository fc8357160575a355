"""
Prometheus metrics for the Conductor runbook engine.

Metrics follow OTEL naming conventions and histograms accept exemplars so
Grafana can jump from a duration spike to an example execution trace.

Environment variables:
- OTEL_SERVICE_NAME: Service name for metrics (default: conductor)
- CONDUCTOR_ENVIRONMENT: Deployment environment (default: development)
- CONDUCTOR_VERSION: Application version (default: unknown)

Usage:
    from Conductor.Core.metrics import record_execution, get_metrics

    record_execution("restart-api", "SUCCESS")
"""

import logging
import os
import sys
from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from prometheus_client.openmetrics.exposition import (
    generate_latest as generate_openmetrics_latest,
    CONTENT_TYPE_LATEST as OPENMETRICS_CONTENT_TYPE,
)

import Conductor.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

DEFAULT_SERVICE_NAME: str = "conductor"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"


def _get_config() -> dict[str, str]:
    """Get metrics configuration from environment variables."""
    return {
        "service_name": os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CONDUCTOR_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CONDUCTOR_VERSION", DEFAULT_VERSION),
        "python_version": (
            f"{sys.version_info.major}.{sys.version_info.minor}."
            f"{sys.version_info.micro}"
        ),
    }


_config = _get_config()

CONDUCTOR_BUILD_INFO = Gauge(
    "conductor_build_info",
    "Conductor service information with OTEL resource attributes",
    ["service_name", "service_version", "deployment_environment", "python_version"],
)
CONDUCTOR_BUILD_INFO.labels(
    service_name=_config["service_name"],
    service_version=_config["version"],
    deployment_environment=_config["environment"],
    python_version=_config["python_version"],
).set(1)

# Execution metrics
RUNBOOK_EXECUTIONS = Counter(
    "conductor_runbook_executions_total",
    "Total runbook executions by final status",
    ["runbook", "status", "service_name"],
)

RUNBOOK_EXECUTION_DURATION = Histogram(
    "conductor_runbook_execution_duration_seconds",
    "Runbook execution duration in seconds",
    ["runbook", "service_name"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
)

EXECUTIONS_ENQUEUED = Counter(
    "conductor_executions_enqueued_total",
    "Total executions enqueued by trigger type",
    ["trigger_type"],
)

EXECUTIONS_IN_FLIGHT = Gauge(
    "conductor_executions_in_flight",
    "Executions currently being orchestrated by this worker",
)

# Step metrics
STEP_OUTCOMES = Counter(
    "conductor_step_outcomes_total",
    "Total step outcomes by step type",
    ["step_type", "outcome"],
)

STEP_DURATION = Histogram(
    "conductor_step_duration_seconds",
    "Step executor duration in seconds",
    ["step_type"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

STEP_RETRIES = Counter(
    "conductor_step_retries_total",
    "Total step retry attempts",
    ["step_type"],
)

# Approval metrics
APPROVALS_PENDING = Gauge(
    "conductor_approvals_pending",
    "Number of approvals currently pending",
)

APPROVAL_DECISIONS = Counter(
    "conductor_approval_decisions_total",
    "Total approval decisions",
    ["decision"],
)

# Scheduler metrics
SCHEDULES_FIRED = Counter(
    "conductor_schedules_fired_total",
    "Total schedule runs enqueued",
    ["frequency"],
)

SCHEDULE_CLAIM_CONFLICTS = Counter(
    "conductor_schedule_claim_conflicts_total",
    "Schedule claims lost to another worker",
)

# Vault metrics
SECRET_RESOLUTION_FAILURES = Counter(
    "conductor_secret_resolution_failures_total",
    "Secrets omitted from an execution because they failed to decrypt",
)


def _build_exemplar(trace_id: Optional[str]) -> Optional[dict[str, str]]:
    """Build an exemplar dictionary for a metric observation."""
    if trace_id:
        return {"trace_id": trace_id}
    return None


def record_execution(runbook_name: str, status: str) -> None:
    """
    Record a finished runbook execution.

    Args:
        runbook_name: Name of the runbook that was executed
        status: Final status of the execution
    """
    RUNBOOK_EXECUTIONS.labels(
        runbook=runbook_name, status=status, service_name=_config["service_name"]
    ).inc()


def record_execution_duration(
    runbook_name: str, duration_seconds: float, trace_id: Optional[str] = None
) -> None:
    """
    Record the duration of a runbook execution.

    Args:
        runbook_name: Name of the runbook that was executed
        duration_seconds: Duration of the execution in seconds
        trace_id: Optional trace ID for exemplar correlation
    """
    RUNBOOK_EXECUTION_DURATION.labels(
        runbook=runbook_name, service_name=_config["service_name"]
    ).observe(duration_seconds, exemplar=_build_exemplar(trace_id))


def record_enqueued(trigger_type: str) -> None:
    EXECUTIONS_ENQUEUED.labels(trigger_type=trigger_type).inc()


def update_in_flight_count(count: int) -> None:
    EXECUTIONS_IN_FLIGHT.set(count)


def record_step_outcome(step_type: str, outcome: str, duration_seconds: float) -> None:
    """Record a single step attempt and its duration."""
    STEP_OUTCOMES.labels(step_type=step_type, outcome=outcome).inc()
    STEP_DURATION.labels(step_type=step_type).observe(duration_seconds)


def record_step_retry(step_type: str) -> None:
    STEP_RETRIES.labels(step_type=step_type).inc()


def update_pending_approval_count(count: int) -> None:
    APPROVALS_PENDING.set(count)


def record_approval_decision(decision: str) -> None:
    APPROVAL_DECISIONS.labels(decision=decision).inc()


def record_schedule_fired(frequency: str) -> None:
    SCHEDULES_FIRED.labels(frequency=frequency).inc()


def record_schedule_conflict() -> None:
    SCHEDULE_CLAIM_CONFLICTS.inc()


def record_secret_resolution_failure() -> None:
    SECRET_RESOLUTION_FAILURES.inc()


def get_metrics(openmetrics: bool = True) -> bytes:
    """
    Generate Prometheus/OpenMetrics output.

    Args:
        openmetrics: If True (default), use OpenMetrics format which supports
                     exemplars. If False, use standard Prometheus format.

    Returns:
        Metrics output as bytes
    """
    if openmetrics:
        return generate_openmetrics_latest(REGISTRY)
    return generate_latest()


def get_metrics_content_type(openmetrics: bool = True) -> str:
    """Get the content type matching get_metrics() output."""
    if openmetrics:
        return OPENMETRICS_CONTENT_TYPE
    return CONTENT_TYPE_LATEST
