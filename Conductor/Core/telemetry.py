"""
OpenTelemetry tracing for the Conductor worker.

Executions run inside a `runbook.execution` span and each step attempt
inside a `runbook.step` child span. Spans are batched to an OTLP collector;
the log formatters read the active span so log lines carry its trace id.

Environment variables:
- OTEL_ENABLED: 'false' turns tracing off for the worker (default: true)
- OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://alloy:4317)
- OTEL_SERVICE_NAME: Service name for traces (default: conductor-worker)
- OTEL_RESOURCE_ATTRIBUTES: Extra resource attributes, 'key=value,key=value'
- OTEL_TRACES_SAMPLER_ARG: Fraction of new traces to keep, 0.0-1.0 (default: 1.0)
- CONDUCTOR_ENVIRONMENT: Deployment environment (default: development)
- CONDUCTOR_VERSION: Application version (default: unknown)

Usage:
    from Conductor.Core.telemetry import get_tracer, mark_span_outcome

    tracer = get_tracer(__name__)
    with tracer.start_as_current_span("runbook.step") as span:
        mark_span_outcome(span, "FAILURE", "exit code 1")
"""

import logging
import os
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter,
)
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import (
    TraceContextTextMapPropagator,
)

import Conductor.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

_initialized: bool = False
_tracer_provider: Optional[TracerProvider] = None

DEFAULT_OTLP_ENDPOINT: str = "http://alloy:4317"
DEFAULT_SERVICE_NAME: str = "conductor-worker"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"
DEFAULT_SAMPLE_RATIO: float = 1.0

# Outcomes that leave a span with an OK status
_SUCCESS_OUTCOMES = frozenset(("SUCCESS", "PAUSED", "PENDING_APPROVAL"))


def _parse_resource_attributes(raw: str) -> dict[str, str]:
    attributes = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        attributes[key.strip()] = value.strip()
    return attributes


def _parse_sample_ratio(raw: Optional[str]) -> float:
    if raw is None or not raw.strip():
        return DEFAULT_SAMPLE_RATIO
    try:
        ratio = float(raw)
    except ValueError:
        logger.log(level=30, msg=f"Ignoring invalid OTEL_TRACES_SAMPLER_ARG '{raw}'")
        return DEFAULT_SAMPLE_RATIO
    return min(max(ratio, 0.0), 1.0)


def get_otel_config() -> dict:
    """Read the tracing settings from the environment."""
    return {
        "enabled": os.environ.get("OTEL_ENABLED", "true").strip().lower() != "false",
        "endpoint": os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", DEFAULT_OTLP_ENDPOINT),
        "service_name": os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CONDUCTOR_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CONDUCTOR_VERSION", DEFAULT_VERSION),
        "sample_ratio": _parse_sample_ratio(os.environ.get("OTEL_TRACES_SAMPLER_ARG")),
        "resource_attributes": _parse_resource_attributes(
            os.environ.get("OTEL_RESOURCE_ATTRIBUTES", "")
        ),
    }


def create_resource(config: dict) -> Resource:
    """Resource describing this worker; extra attributes may override the defaults."""
    attributes = {
        "service.name": config["service_name"],
        "service.version": config["version"],
        "deployment.environment": config["environment"],
    }
    attributes.update(config.get("resource_attributes", {}))
    return Resource.create(attributes)


def create_tracer_provider(
    resource: Resource, endpoint: str, sample_ratio: float = DEFAULT_SAMPLE_RATIO
) -> TracerProvider:
    """
    TracerProvider that batches spans to an OTLP collector.

    Root spans are sampled at sample_ratio; child spans follow their parent,
    so an execution is either traced with all of its steps or not at all.
    """
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(root=TraceIdRatioBased(sample_ratio)),
    )
    # Collector runs inside the cluster
    exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_propagators() -> None:
    """Configure W3C trace context propagation."""
    set_global_textmap(CompositePropagator([TraceContextTextMapPropagator()]))


def init_worker_telemetry(
    service_name: str = DEFAULT_SERVICE_NAME, enable: Optional[bool] = None
) -> bool:
    """
    Install the worker's tracer provider.

    Args:
        service_name: Service name for traces
        enable: Override for OTEL_ENABLED

    Returns:
        True if tracing is set up (or deliberately disabled), False on error
    """
    global _initialized, _tracer_provider

    if _initialized:
        logger.log(level=10, msg="Telemetry already initialized, skipping")
        return True

    try:
        config = get_otel_config()
        if enable is None:
            enable = config["enabled"]
        if not enable:
            logger.log(level=20, msg="Worker tracing disabled")
            _initialized = True
            return True

        config["service_name"] = service_name
        logger.log(
            level=20,
            msg=f"Initializing worker tracing: service={service_name}, "
            f"endpoint={config['endpoint']}, sample_ratio={config['sample_ratio']}",
        )

        _tracer_provider = create_tracer_provider(
            create_resource(config), config["endpoint"], config["sample_ratio"]
        )
        trace.set_tracer_provider(_tracer_provider)
        setup_propagators()

        _initialized = True
        return True

    except Exception as e:
        logger.log(level=40, msg=f"Failed to initialize worker tracing: {e}")
        return False


def shutdown_telemetry() -> None:
    """Flush pending spans and release the tracer provider."""
    global _initialized, _tracer_provider

    if _tracer_provider is not None:
        try:
            _tracer_provider.shutdown()
            logger.log(level=20, msg="Worker tracing shut down")
        except Exception as e:
            logger.log(level=30, msg=f"Error during tracing shutdown: {e}")

    _initialized = False
    _tracer_provider = None


def is_telemetry_enabled() -> bool:
    return _initialized


def get_tracer(name: str = __name__) -> trace.Tracer:
    """
    Tracer for custom spans.

    Without an installed provider this is the no-op tracer, so instrumented
    code runs unchanged in tests.
    """
    return trace.get_tracer(name)


# ============================================================================
# Span helpers
# ============================================================================


def trace_id_of(span: Any) -> Optional[str]:
    """Hex trace id of a span, or None for a non-recording span."""
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def mark_span_outcome(span: Any, outcome: str, error: Optional[str] = None) -> None:
    """
    Record an execution status or step outcome on a span.

    Anything other than success (or a pause for approval) marks the span
    as an error, so failed executions stand out in Tempo.
    """
    span.set_attribute("conductor.outcome", outcome)
    if outcome in _SUCCESS_OUTCOMES:
        span.set_status(Status(StatusCode.OK))
    else:
        span.set_status(Status(StatusCode.ERROR, error or outcome))
