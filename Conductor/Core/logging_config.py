"""
Structured logging for Conductor workers.

Every record is rendered as an OTEL log data model entry (JSON, for Loki) or
as a plain text line. Two kinds of correlation are attached automatically:

- the active span (TraceId/SpanId), so logs line up with Tempo traces
- the execution context bound by the orchestrator (execution, runbook,
  step and attempt), so every line written while a step runs can be
  filtered by execution without passing IDs to each log call

Environment variables:
- CONDUCTOR_LOG_FORMAT: 'json' (default) or 'text'
- CONDUCTOR_LOG_LEVEL: DEBUG, INFO, WARN(ING), ERROR, FATAL (default: INFO)
- OTEL_SERVICE_NAME: Service name for logs (default: conductor)
- CONDUCTOR_ENVIRONMENT: Deployment environment (default: development)
- CONDUCTOR_VERSION: Application version (default: unknown)

Usage:
    from Conductor.Core.logging_config import bind_execution_context, get_logger

    logger = get_logger(__name__)
    with bind_execution_context(execution_id=42, step_id="drain"):
        logger.info("Draining pool")
"""
import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace

# https://opentelemetry.io/docs/specs/otel/logs/data-model/#severity-fields
OTEL_SEVERITY_TEXT: Dict[int, str] = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}

OTEL_SEVERITY_NUMBER: Dict[int, int] = {
    logging.DEBUG: 5,
    logging.INFO: 9,
    logging.WARNING: 13,
    logging.ERROR: 17,
    logging.CRITICAL: 21,
}

LOG_LEVELS: Dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

DEFAULT_LOG_FORMAT: str = "json"
DEFAULT_LOG_LEVEL: str = "INFO"
DEFAULT_SERVICE_NAME: str = "conductor"
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_VERSION: str = "unknown"

# Prefix for execution context keys in the Attributes map
EXECUTION_ATTRIBUTE_PREFIX = "conductor."

# LogRecord attributes that are not extras passed by the caller
_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName", "trace_id",
))

_execution_context: ContextVar[Dict[str, Any]] = ContextVar(
    "conductor_execution_context", default={}
)
_configured: bool = False


def get_log_config() -> Dict[str, Any]:
    """Read the logging settings from the environment."""
    return {
        "format": os.environ.get("CONDUCTOR_LOG_FORMAT", DEFAULT_LOG_FORMAT).strip().lower(),
        "level": os.environ.get("CONDUCTOR_LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper(),
        "service_name": os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        "environment": os.environ.get("CONDUCTOR_ENVIRONMENT", DEFAULT_ENVIRONMENT),
        "version": os.environ.get("CONDUCTOR_VERSION", DEFAULT_VERSION),
    }


def get_trace_context() -> Dict[str, Optional[str]]:
    """
    Trace and span ID of the current span, hex encoded.

    Both are None outside a valid span.
    """
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {"trace_id": None, "span_id": None}

    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


# ============================================================================
# Execution context
# ============================================================================


def get_execution_context() -> Dict[str, Any]:
    """Execution fields bound to the current thread of work."""
    return dict(_execution_context.get())


@contextmanager
def bind_execution_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Attach execution fields to every record logged inside the block.

    Nested bindings extend the outer ones; None values are ignored. The
    binding is per thread (context variable), so PARALLEL children bind
    their own step IDs without seeing each other's.
    """
    merged = dict(_execution_context.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _execution_context.set(merged)
    try:
        yield merged
    finally:
        _execution_context.reset(token)


def _execution_label(context: Dict[str, Any]) -> str:
    parts = []
    if "execution_id" in context:
        parts.append(f"execution={context['execution_id']}")
    if "step_id" in context:
        parts.append(f"step={context['step_id']}")
    if "attempt" in context:
        parts.append(f"attempt={context['attempt']}")
    return " ".join(parts)


# ============================================================================
# Formatters
# ============================================================================


class JSONFormatter(logging.Formatter):
    """
    Render records in the OTEL log data model.

    Execution context and caller extras land in Attributes; extras win over
    the bound context when both set the same key.
    """

    def __init__(
        self,
        service_name: str = DEFAULT_SERVICE_NAME,
        environment: str = DEFAULT_ENVIRONMENT,
        version: str = DEFAULT_VERSION,
    ):
        super().__init__()
        self.resource = {
            "service.name": service_name,
            "service.version": version,
            "deployment.environment": environment,
        }

    def _attributes(self, record: logging.LogRecord) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            "code.filepath": record.pathname,
            "code.lineno": record.lineno,
            "code.function": record.funcName,
            "thread.name": record.threadName,
        }

        for key, value in get_execution_context().items():
            attributes[f"{EXECUTION_ATTRIBUTE_PREFIX}{key}"] = value

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            attributes["exception.type"] = exc_type.__name__ if exc_type else None
            attributes["exception.message"] = str(exc_value)
            attributes["exception.stacktrace"] = self.formatException(record.exc_info)

        attributes.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS
        )
        return attributes

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "Timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "SeverityText": OTEL_SEVERITY_TEXT.get(record.levelno, "INFO"),
            "SeverityNumber": OTEL_SEVERITY_NUMBER.get(record.levelno, 9),
            "Body": record.getMessage(),
            "Resource": dict(self.resource),
            "InstrumentationScope": {"Name": record.name},
            "Attributes": self._attributes(record),
        }

        trace_context = get_trace_context()
        if trace_context["trace_id"]:
            entry["TraceId"] = trace_context["trace_id"]
            entry["SpanId"] = trace_context["span_id"]

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """
    Human-readable lines for local runs.

    The message is prefixed with the trace ID and the bound execution
    context when there is one, e.g.
    ``[trace_id=...] [execution=42 step=drain] Draining pool``.
    """

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None):
        super().__init__(
            fmt=fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt=datefmt or "%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        prefixes = []
        trace_id = get_trace_context()["trace_id"]
        if trace_id:
            record.trace_id = trace_id
            prefixes.append(f"[trace_id={trace_id}]")
        label = _execution_label(get_execution_context())
        if label:
            prefixes.append(f"[{label}]")

        if prefixes:
            record.msg = " ".join(prefixes + [record.getMessage()])
            record.args = ()
        return super().format(record)


# ============================================================================
# Setup
# ============================================================================


def configure_logging(
    log_format: Optional[str] = None,
    log_level: Optional[str] = None,
    service_name: Optional[str] = None,
    environment: Optional[str] = None,
    version: Optional[str] = None,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Explicit arguments win over the environment. Any handlers already on
    the root logger are removed.
    """
    global _configured

    config = get_log_config()
    log_format = (log_format or config["format"]).lower()
    level = LOG_LEVELS.get((log_level or config["level"]).upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter(
            service_name=service_name or config["service_name"],
            environment=environment or config["environment"],
            version=version or config["version"],
        )
    else:
        formatter = TextFormatter()

    # stdout for container collection
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Named logger; configures logging from the environment on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


def is_logging_configured() -> bool:
    return _configured


def reset_logging_config() -> None:
    """Forget that logging was configured. Used by tests."""
    global _configured
    _configured = False
