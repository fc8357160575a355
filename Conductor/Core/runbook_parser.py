"""Runbook definition parser for Conductor.

Runbook definitions arrive as loosely-typed maps (YAML or JSON, snake_case or
the camelCase used by the editor UI). This module validates each step once,
against a per-type cerberus schema, and turns it into a typed step dataclass.
The orchestrator and executors only ever see the typed form.

Supported step types:
- HTTP: HTTP request to an external URL
- SQL: Query against a PostgreSQL database
- SHELL: Run a command in a subprocess
- SCRIPT: Run inline python/node/bash code in a subprocess
- MANUAL: Pause for a human approval
- CONDITIONAL: Branch on a condition into on_true/on_false step lists
- AI: Ask a model backend for a completion
- WAIT: Pause for a duration
- PARALLEL: Run child steps concurrently

Failure policies (on_failure):
- STOP: Fail the execution
- CONTINUE: Log the failure and move on
- RETRY: Re-run with exponential backoff (see retry)
- ROLLBACK: Run compensating steps of earlier steps, then fail
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Iterator, Optional, Union

import yaml  # type: ignore[import-untyped]
from cerberus import Validator

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import ConfigurationError, RunbookParseError
from Conductor.Core.utils.datetime_helpers import isoformat

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

DEFAULT_STEP_TIMEOUT = 300
NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


class StepType(str, Enum):
    """Supported runbook step types."""

    HTTP = "HTTP"
    SQL = "SQL"
    SHELL = "SHELL"
    SCRIPT = "SCRIPT"
    MANUAL = "MANUAL"
    CONDITIONAL = "CONDITIONAL"
    AI = "AI"
    WAIT = "WAIT"
    PARALLEL = "PARALLEL"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a value is a valid step type."""
        try:
            cls(value.upper())
            return True
        except ValueError:
            return False


class OnFailure(str, Enum):
    """Action to take when a step fails."""

    STOP = "STOP"
    CONTINUE = "CONTINUE"
    RETRY = "RETRY"
    ROLLBACK = "ROLLBACK"


class RunbookStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    DEPRECATED = "DEPRECATED"


class Environment(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    STAGING = "STAGING"
    PRODUCTION = "PRODUCTION"


class ConditionType(str, Enum):
    """Supported condition types for CONDITIONAL steps."""

    VARIABLE_CHECK = "variable_check"
    PREVIOUS_STEP_STATUS = "previous_step_status"
    EXPRESSION = "expression"


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    SECRET = "secret"


CONDITION_OPERATORS = ["==", "!=", ">", "<", ">=", "<=", "contains", "matches"]
HTTP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
SCRIPT_RUNTIMES = ["python", "node", "bash"]


# ============================================================================
# Step dataclasses
# ============================================================================


@dataclass
class RetryConfig:
    """Retry settings, only meaningful with on_failure=RETRY."""

    max_attempts: int = 3
    delay_ms: int = 1000
    backoff_multiplier: float = 2.0

    def delay_seconds(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return self.delay_ms * (self.backoff_multiplier ** (attempt - 1)) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "delay_ms": self.delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }


@dataclass(kw_only=True)
class StepBase:
    """Fields shared by every step type."""

    step_type: ClassVar[StepType]

    on_failure: OnFailure = OnFailure.STOP
    retry: Optional[RetryConfig] = None
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT
    rollback: list["RunbookStep"] = field(default_factory=list)
    output_variable: Optional[str] = None
    description: Optional[str] = None

    @property
    def retry_config(self) -> RetryConfig:
        return self.retry or RetryConfig()

    def children(self) -> list["RunbookStep"]:
        """Nested steps that run as part of this step."""
        return []

    def _config_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire/storage representation."""
        data: dict[str, Any] = {
            "id": self.id,  # type: ignore[attr-defined]
            "name": self.name,  # type: ignore[attr-defined]
            "type": self.step_type.value,
            "on_failure": self.on_failure.value,
            "timeout_seconds": self.timeout_seconds,
        }
        if self.retry:
            data["retry"] = self.retry.to_dict()
        if self.rollback:
            data["rollback"] = [s.to_dict() for s in self.rollback]
        if self.output_variable:
            data["output_variable"] = self.output_variable
        if self.description:
            data["description"] = self.description
        data.update(self._config_dict())
        return data


@dataclass
class HttpAuth:
    """Authentication applied to an HTTP step."""

    type: str
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    header: str = "X-API-Key"
    value: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class HttpStep(StepBase):
    """HTTP step configuration."""

    step_type: ClassVar[StepType] = StepType.HTTP

    id: str
    name: str
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    auth: Optional[HttpAuth] = None
    expected_status_codes: list[int] = field(default_factory=lambda: [200])

    def _config_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method,
            "headers": self.headers,
            "body": self.body,
            "auth": self.auth.to_dict() if self.auth else None,
            "expected_status_codes": self.expected_status_codes,
        }


@dataclass
class SqlStep(StepBase):
    """SQL step configuration."""

    step_type: ClassVar[StepType] = StepType.SQL

    id: str
    name: str
    query: str
    connection_string: Optional[str] = None
    secret_name: Optional[str] = None
    parameters: Union[list[Any], dict[str, Any], None] = None
    expected_row_count: Optional[int] = None

    def _config_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "connection_string": self.connection_string,
            "secret_name": self.secret_name,
            "parameters": self.parameters,
            "expected_row_count": self.expected_row_count,
        }


@dataclass
class ShellStep(StepBase):
    """SHELL step configuration."""

    step_type: ClassVar[StepType] = StepType.SHELL

    id: str
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    working_directory: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    shell: bool = False
    expected_exit_code: int = 0

    def _config_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": self.args,
            "working_directory": self.working_directory,
            "env": self.env,
            "shell": self.shell,
            "expected_exit_code": self.expected_exit_code,
        }


@dataclass
class ScriptStep(StepBase):
    """SCRIPT step configuration."""

    step_type: ClassVar[StepType] = StepType.SCRIPT

    id: str
    name: str
    runtime: str
    code: str
    env: dict[str, str] = field(default_factory=dict)
    expected_exit_code: int = 0

    def _config_dict(self) -> dict[str, Any]:
        return {
            "runtime": self.runtime,
            "code": self.code,
            "env": self.env,
            "expected_exit_code": self.expected_exit_code,
        }


@dataclass
class ManualStep(StepBase):
    """MANUAL (approval) step configuration."""

    step_type: ClassVar[StepType] = StepType.MANUAL

    id: str
    name: str
    instructions: str = ""
    approvers: list[str] = field(default_factory=list)
    expires_after: Optional[float] = None

    def _config_dict(self) -> dict[str, Any]:
        return {
            "instructions": self.instructions,
            "approvers": self.approvers,
            "expires_after": self.expires_after,
        }


@dataclass
class Condition:
    """Condition evaluated by a CONDITIONAL step."""

    type: ConditionType
    variable: Optional[str] = None
    operator: str = "=="
    value: Any = None
    step_id: Optional[str] = None
    expected_status: str = "success"
    expression: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {k: v for k, v in self.__dict__.items() if v is not None}
        data["type"] = self.type.value
        return data


@dataclass
class ConditionalStep(StepBase):
    """CONDITIONAL step configuration."""

    step_type: ClassVar[StepType] = StepType.CONDITIONAL

    id: str
    name: str
    condition: Condition
    on_true: list["RunbookStep"] = field(default_factory=list)
    on_false: list["RunbookStep"] = field(default_factory=list)

    def children(self) -> list["RunbookStep"]:
        return list(self.on_true) + list(self.on_false)

    def _config_dict(self) -> dict[str, Any]:
        return {
            "condition": self.condition.to_dict(),
            "on_true": [s.to_dict() for s in self.on_true],
            "on_false": [s.to_dict() for s in self.on_false],
        }


@dataclass
class AiStep(StepBase):
    """AI step configuration."""

    step_type: ClassVar[StepType] = StepType.AI

    id: str
    name: str
    prompt: str
    action: str = "analyze"
    context: Any = None
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1024

    def _config_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "action": self.action,
            "context": self.context,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


@dataclass
class WaitStep(StepBase):
    """WAIT step configuration."""

    step_type: ClassVar[StepType] = StepType.WAIT

    id: str
    name: str
    duration_seconds: float
    reason: Optional[str] = None

    def _config_dict(self) -> dict[str, Any]:
        return {"duration": self.duration_seconds, "reason": self.reason}


@dataclass
class ParallelStep(StepBase):
    """PARALLEL step configuration."""

    step_type: ClassVar[StepType] = StepType.PARALLEL

    id: str
    name: str
    steps: list["RunbookStep"] = field(default_factory=list)
    max_concurrency: Optional[int] = None
    fail_fast: bool = False

    def children(self) -> list["RunbookStep"]:
        return list(self.steps)

    def _config_dict(self) -> dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "max_concurrency": self.max_concurrency,
            "fail_fast": self.fail_fast,
        }


RunbookStep = Union[
    HttpStep, SqlStep, ShellStep, ScriptStep, ManualStep,
    ConditionalStep, AiStep, WaitStep, ParallelStep,
]


# ============================================================================
# Runbook dataclasses
# ============================================================================


@dataclass
class RunbookParameter:
    """A declared runbook input."""

    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    options: list[Any] = field(default_factory=list)
    validation: Optional[str] = None
    description: Optional[str] = None

    def coerce(self, value: Any) -> Any:
        """
        Validate and coerce a supplied value to this parameter's type.

        Raises:
            ConfigurationError: If the value does not fit the declaration
        """
        if self.type == ParameterType.NUMBER:
            if isinstance(value, bool):
                raise ConfigurationError(f"Parameter '{self.name}' must be a number")
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Parameter '{self.name}' must be a number")
            return int(number) if number.is_integer() else number

        if self.type == ParameterType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if str(value).lower() in ("true", "1", "yes"):
                return True
            if str(value).lower() in ("false", "0", "no"):
                return False
            raise ConfigurationError(f"Parameter '{self.name}' must be a boolean")

        if self.type == ParameterType.SELECT:
            if value not in self.options:
                raise ConfigurationError(
                    f"Parameter '{self.name}' must be one of {self.options}"
                )
            return value

        value = str(value)
        if self.validation and not re.fullmatch(self.validation, value):
            raise ConfigurationError(
                f"Parameter '{self.name}' does not match {self.validation}"
            )
        return value

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "required": self.required,
            "default": self.default,
            "options": self.options,
            "validation": self.validation,
            "description": self.description,
        }


@dataclass
class Runbook:
    """Parsed runbook definition (one version)."""

    name: str
    steps: list[RunbookStep]
    runbook_id: Optional[int] = None
    description: str = ""
    status: RunbookStatus = RunbookStatus.DRAFT
    environment: Environment = Environment.DEVELOPMENT
    version: int = 1
    is_latest: bool = True
    parameters: list[RunbookParameter] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def iter_steps(self) -> Iterator[RunbookStep]:
        """Walk every step in the tree, depth first, rollback steps included."""
        pending = list(reversed(self.steps))
        while pending:
            step = pending.pop()
            yield step
            nested = step.children() + list(step.rollback)
            pending.extend(reversed(nested))

    def count_steps(self) -> int:
        """Number of executable steps, nested children included."""
        def _count(steps: list[RunbookStep]) -> int:
            return sum(1 + _count(s.children()) for s in steps)

        return _count(self.steps)

    def bind_parameters(self, supplied: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Resolve supplied parameters against the declarations.

        Declared defaults fill in missing values. Undeclared parameters are
        passed through unchanged.

        Raises:
            ConfigurationError: On a missing required parameter or bad value
        """
        supplied = dict(supplied or {})
        bound: dict[str, Any] = {}
        for param in self.parameters:
            if param.name in supplied and supplied[param.name] is not None:
                bound[param.name] = param.coerce(supplied.pop(param.name))
            elif param.default is not None:
                bound[param.name] = param.default
            elif param.required:
                raise ConfigurationError(
                    f"Missing required parameter '{param.name}' for runbook '{self.name}'"
                )
        bound.update(supplied)
        return bound

    def definition(self) -> dict[str, Any]:
        """Structural part of the runbook, as stored."""
        return {
            "steps": [s.to_dict() for s in self.steps],
            "parameters": [p.to_dict() for p in self.parameters],
            "variables": self.variables,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        data = {
            "runbook_id": self.runbook_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "environment": self.environment.value,
            "version": self.version,
            "is_latest": self.is_latest,
            "timeout_seconds": self.timeout_seconds,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }
        data.update(self.definition())
        return data


# ============================================================================
# Schemas
# ============================================================================

_DURATION = {"type": ["integer", "float", "string"], "nullable": True}
_STEP_LIST = {"type": "list", "schema": {"type": "dict"}}
_STRING_MAP = {"type": "dict", "keysrules": {"type": "string"}}

COMMON_STEP_SCHEMA: dict[str, Any] = {
    "id": {"type": "string", "empty": False},
    "name": {"type": "string", "required": True, "empty": False},
    "type": {"type": "string", "required": True, "allowed": [t.value for t in StepType]},
    "description": {"type": "string", "nullable": True},
    "on_failure": {"type": "string", "allowed": [p.value for p in OnFailure]},
    "retry": {
        "type": "dict",
        "nullable": True,
        "schema": {
            "max_attempts": {"type": "integer", "min": 1},
            "delay_ms": {"type": "integer", "min": 0},
            "backoff_multiplier": {"type": "number", "min": 1},
        },
    },
    "timeout_seconds": _DURATION,
    "rollback": _STEP_LIST,
    "output_variable": {"type": "string", "nullable": True, "regex": NAME_PATTERN},
}

STEP_SCHEMAS: dict[StepType, dict[str, Any]] = {
    StepType.HTTP: {
        "url": {"type": "string", "required": True, "empty": False},
        "method": {"type": "string", "allowed": HTTP_METHODS},
        "headers": _STRING_MAP,
        "body": {"nullable": True},
        "auth": {
            "type": "dict",
            "nullable": True,
            "schema": {
                "type": {
                    "type": "string",
                    "required": True,
                    "allowed": ["bearer", "basic", "api_key"],
                },
                "token": {"type": "string"},
                "username": {"type": "string"},
                "password": {"type": "string"},
                "header": {"type": "string"},
                "value": {"type": "string"},
            },
        },
        "expected_status_codes": {
            "type": "list",
            "schema": {"type": "integer", "min": 100, "max": 599},
        },
    },
    StepType.SQL: {
        "query": {"type": "string", "required": True, "empty": False},
        "connection_string": {"type": "string", "nullable": True},
        "secret_name": {"type": "string", "nullable": True, "regex": NAME_PATTERN},
        "parameters": {"type": ["list", "dict"], "nullable": True},
        "expected_row_count": {"type": "integer", "nullable": True, "min": 0},
    },
    StepType.SHELL: {
        "command": {"type": "string", "required": True, "empty": False},
        "args": {"type": "list", "schema": {"type": ["string", "number"]}},
        "working_directory": {"type": "string", "nullable": True},
        "env": _STRING_MAP,
        "shell": {"type": "boolean"},
        "expected_exit_code": {"type": "integer"},
    },
    StepType.SCRIPT: {
        "runtime": {"type": "string", "required": True, "allowed": SCRIPT_RUNTIMES},
        "code": {"type": "string", "required": True, "empty": False},
        "env": _STRING_MAP,
        "expected_exit_code": {"type": "integer"},
    },
    StepType.MANUAL: {
        "instructions": {"type": "string", "nullable": True},
        "approvers": {"type": "list", "schema": {"type": "string"}},
        "expires_after": _DURATION,
    },
    StepType.CONDITIONAL: {
        "condition": {
            "type": "dict",
            "required": True,
            "schema": {
                "type": {
                    "type": "string",
                    "required": True,
                    "allowed": [c.value for c in ConditionType],
                },
                "variable": {"type": "string"},
                "operator": {"type": "string", "allowed": CONDITION_OPERATORS},
                "value": {"nullable": True},
                "step_id": {"type": "string"},
                "expected_status": {"type": "string", "allowed": ["success", "failure"]},
                "expression": {"type": "string"},
            },
        },
        "on_true": _STEP_LIST,
        "on_false": _STEP_LIST,
    },
    StepType.AI: {
        "prompt": {"type": "string", "required": True, "empty": False},
        "action": {"type": "string"},
        "context": {"nullable": True},
        "model": {"type": "string", "nullable": True},
        "temperature": {"type": "number", "min": 0, "max": 2},
        "max_tokens": {"type": "integer", "min": 1},
    },
    StepType.WAIT: {
        "duration": {"type": ["integer", "float", "string"], "required": True},
        "reason": {"type": "string", "nullable": True},
    },
    StepType.PARALLEL: {
        "steps": {"type": "list", "required": True, "minlength": 1, "schema": {"type": "dict"}},
        "max_concurrency": {"type": "integer", "nullable": True, "min": 1},
        "fail_fast": {"type": "boolean"},
    },
}

PARAMETER_SCHEMA: dict[str, Any] = {
    "name": {"type": "string", "required": True, "regex": NAME_PATTERN},
    "type": {"type": "string", "allowed": [p.value for p in ParameterType]},
    "required": {"type": "boolean"},
    "default": {"nullable": True},
    "options": {"type": "list"},
    "validation": {"type": "string", "nullable": True},
    "description": {"type": "string", "nullable": True},
    "label": {"type": "string", "nullable": True},
}


# ============================================================================
# Parsing helpers
# ============================================================================


def _parse_duration(duration: Any) -> float:
    """
    Parse a duration to seconds.

    Supports formats:
    - 30 or "30" or "30s" -> 30 seconds
    - "500ms" -> 0.5 seconds
    - "5m" -> 300 seconds
    - "1h" -> 3600 seconds

    Raises:
        ValueError: If format is invalid
    """
    if duration is None or duration == "":
        raise ValueError("Duration cannot be empty")

    if isinstance(duration, (int, float)) and not isinstance(duration, bool):
        if duration < 0:
            raise ValueError("Duration cannot be negative")
        return float(duration)

    duration_str = str(duration).strip().lower()
    match = re.match(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$", duration_str)
    if not match:
        raise ValueError(
            f"Invalid duration format: '{duration_str}'. "
            "Expected number with optional unit (ms/s/m/h)"
        )

    value = float(match.group(1))
    unit = match.group(2) or "s"
    multiplier = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}[unit]
    return value * multiplier


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


# UI spellings that differ by more than case
_KEY_ALIASES = {
    "retry_config": "retry",
    "timeout": "timeout_seconds",
    "expires_after_seconds": "expires_after",
    "on_true_steps": "on_true",
    "on_false_steps": "on_false",
    "rollback_steps": "rollback",
}


def _normalize_mapping(data: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        key = _snake_case(str(key))
        key = _KEY_ALIASES.get(key, key)
        if isinstance(value, dict) and key in ("retry", "condition", "auth"):
            value = _normalize_mapping(value)
        normalized[key] = value
    return normalized


def _normalize_step_data(step_data: dict[str, Any]) -> dict[str, Any]:
    """Flatten a nested `config` map and convert keys to snake_case."""
    data = dict(step_data)
    nested = data.pop("config", None)
    if isinstance(nested, dict):
        for key, value in nested.items():
            data.setdefault(key, value)

    data = _normalize_mapping(data)

    for key in ("type", "on_failure", "method"):
        if isinstance(data.get(key), str):
            data[key] = data[key].upper()
    if "id" not in data and isinstance(data.get("name"), str):
        data["id"] = data["name"]
    if "id" in data and data["id"] is not None:
        data["id"] = str(data["id"])

    retry = data.get("retry")
    if isinstance(retry, dict) and "max_retries" in retry:
        retry.setdefault("max_attempts", retry.pop("max_retries"))
    return data


def _first_error(errors: dict[str, Any]) -> tuple[str, str]:
    """Flatten cerberus' nested error tree to (field path, message)."""
    field_name = next(iter(errors))
    detail = errors[field_name]
    path = str(field_name)
    while isinstance(detail, list) and detail:
        head = detail[0]
        if isinstance(head, dict) and head:
            sub = next(iter(head))
            path = f"{path}.{sub}"
            detail = head[sub]
        else:
            return path, str(head)
    return path, str(detail)


def _validate(data: dict[str, Any], schema: dict[str, Any]) -> None:
    validator = Validator(schema, allow_unknown=False)
    if not validator.validate(data):
        field_name, message = _first_error(validator.errors)
        raise RunbookParseError(message, field_name)


def _parse_step_list(items: list[Any], field_name: str) -> list[RunbookStep]:
    steps: list[RunbookStep] = []
    for i, item in enumerate(items):
        try:
            steps.append(parse_step(item))
        except RunbookParseError as e:
            raise RunbookParseError(
                f"{field_name}[{i}]: {e.message}", e.field
            )
    return steps


def _common_kwargs(data: dict[str, Any]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "id": data["id"],
        "name": data["name"],
        "on_failure": OnFailure(data.get("on_failure", OnFailure.STOP.value)),
        "output_variable": data.get("output_variable"),
        "description": data.get("description"),
    }

    timeout = data.get("timeout_seconds")
    if timeout is not None:
        try:
            kwargs["timeout_seconds"] = _parse_duration(timeout)
        except ValueError as e:
            raise RunbookParseError(str(e), "timeout_seconds")
        if kwargs["timeout_seconds"] <= 0:
            raise RunbookParseError("Step timeout must be positive", "timeout_seconds")

    retry = data.get("retry")
    if retry:
        kwargs["retry"] = RetryConfig(
            max_attempts=int(retry.get("max_attempts", 3)),
            delay_ms=int(retry.get("delay_ms", 1000)),
            backoff_multiplier=float(retry.get("backoff_multiplier", 2.0)),
        )
    elif kwargs["on_failure"] == OnFailure.RETRY:
        kwargs["retry"] = RetryConfig()

    kwargs["rollback"] = _parse_step_list(data.get("rollback") or [], "rollback")
    return kwargs


def _parse_http_step(data: dict[str, Any]) -> HttpStep:
    if not data["url"].startswith(("http://", "https://", "${")):
        raise RunbookParseError(
            "URL must start with http://, https://, or be a variable", "url"
        )

    auth = None
    if data.get("auth"):
        auth = HttpAuth(**data["auth"])
        required = {"bearer": ["token"], "basic": ["username", "password"],
                    "api_key": ["value"]}[auth.type]
        for attr in required:
            if not getattr(auth, attr):
                raise RunbookParseError(
                    f"{auth.type} auth requires '{attr}'", f"auth.{attr}"
                )

    return HttpStep(
        url=data["url"],
        method=data.get("method", "GET"),
        headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
        body=data.get("body"),
        auth=auth,
        expected_status_codes=list(data.get("expected_status_codes") or [200]),
        **_common_kwargs(data),
    )


def _parse_sql_step(data: dict[str, Any]) -> SqlStep:
    if not data.get("connection_string") and not data.get("secret_name"):
        raise RunbookParseError(
            "SQL step requires either connection_string or secret_name",
            "connection_string",
        )

    return SqlStep(
        query=data["query"],
        connection_string=data.get("connection_string"),
        secret_name=data.get("secret_name"),
        parameters=data.get("parameters"),
        expected_row_count=data.get("expected_row_count"),
        **_common_kwargs(data),
    )


def _parse_shell_step(data: dict[str, Any]) -> ShellStep:
    return ShellStep(
        command=data["command"],
        args=[str(a) for a in data.get("args") or []],
        working_directory=data.get("working_directory"),
        env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        shell=bool(data.get("shell", False)),
        expected_exit_code=int(data.get("expected_exit_code", 0)),
        **_common_kwargs(data),
    )


def _parse_script_step(data: dict[str, Any]) -> ScriptStep:
    return ScriptStep(
        runtime=data["runtime"],
        code=data["code"],
        env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        expected_exit_code=int(data.get("expected_exit_code", 0)),
        **_common_kwargs(data),
    )


def _parse_manual_step(data: dict[str, Any]) -> ManualStep:
    expires_after = None
    if data.get("expires_after") is not None:
        try:
            expires_after = _parse_duration(data["expires_after"])
        except ValueError as e:
            raise RunbookParseError(str(e), "expires_after")

    return ManualStep(
        instructions=data.get("instructions") or "",
        approvers=list(data.get("approvers") or []),
        expires_after=expires_after,
        **_common_kwargs(data),
    )


def _parse_condition(data: dict[str, Any]) -> Condition:
    condition = Condition(
        type=ConditionType(data["type"]),
        variable=data.get("variable"),
        operator=data.get("operator", "=="),
        value=data.get("value"),
        step_id=data.get("step_id"),
        expected_status=data.get("expected_status", "success"),
        expression=data.get("expression"),
    )

    if condition.type == ConditionType.VARIABLE_CHECK and not condition.variable:
        raise RunbookParseError("variable_check requires 'variable'", "condition.variable")
    if condition.type == ConditionType.PREVIOUS_STEP_STATUS and not condition.step_id:
        raise RunbookParseError(
            "previous_step_status requires 'step_id'", "condition.step_id"
        )
    if condition.type == ConditionType.EXPRESSION and not condition.expression:
        raise RunbookParseError("expression requires 'expression'", "condition.expression")
    return condition


def _parse_conditional_step(data: dict[str, Any]) -> ConditionalStep:
    return ConditionalStep(
        condition=_parse_condition(data["condition"]),
        on_true=_parse_step_list(data.get("on_true") or [], "on_true"),
        on_false=_parse_step_list(data.get("on_false") or [], "on_false"),
        **_common_kwargs(data),
    )


def _parse_ai_step(data: dict[str, Any]) -> AiStep:
    return AiStep(
        prompt=data["prompt"],
        action=data.get("action", "analyze"),
        context=data.get("context"),
        model=data.get("model"),
        temperature=float(data.get("temperature", 0.7)),
        max_tokens=int(data.get("max_tokens", 1024)),
        **_common_kwargs(data),
    )


def _parse_wait_step(data: dict[str, Any]) -> WaitStep:
    try:
        duration_seconds = _parse_duration(data["duration"])
    except ValueError as e:
        raise RunbookParseError(str(e), "duration")

    return WaitStep(
        duration_seconds=duration_seconds,
        reason=data.get("reason"),
        **_common_kwargs(data),
    )


def _parse_parallel_step(data: dict[str, Any]) -> ParallelStep:
    return ParallelStep(
        steps=_parse_step_list(data["steps"], "steps"),
        max_concurrency=data.get("max_concurrency"),
        fail_fast=bool(data.get("fail_fast", False)),
        **_common_kwargs(data),
    )


_STEP_PARSERS = {
    StepType.HTTP: _parse_http_step,
    StepType.SQL: _parse_sql_step,
    StepType.SHELL: _parse_shell_step,
    StepType.SCRIPT: _parse_script_step,
    StepType.MANUAL: _parse_manual_step,
    StepType.CONDITIONAL: _parse_conditional_step,
    StepType.AI: _parse_ai_step,
    StepType.WAIT: _parse_wait_step,
    StepType.PARALLEL: _parse_parallel_step,
}


def parse_step(step_data: Any) -> RunbookStep:
    """
    Validate a single step map and build its typed dataclass.

    Raises:
        RunbookParseError: If the step is invalid
    """
    if not isinstance(step_data, dict):
        raise RunbookParseError("Step must be a dictionary")

    data = _normalize_step_data(step_data)

    step_type_str = data.get("type")
    if not step_type_str:
        raise RunbookParseError("Step type is required", "type")
    if not StepType.is_valid(str(step_type_str)):
        valid_types = [st.value for st in StepType]
        raise RunbookParseError(
            f"Invalid step type: {step_type_str}. Must be one of {valid_types}", "type"
        )

    step_type = StepType(str(step_type_str).upper())
    schema = dict(COMMON_STEP_SCHEMA)
    schema.update(STEP_SCHEMAS[step_type])
    _validate(data, schema)

    return _STEP_PARSERS[step_type](data)


def _check_step_tree(steps: list[RunbookStep]) -> None:
    """Enforce tree-wide invariants: unique IDs, MANUAL only at top level."""
    seen: set[str] = set()

    def _walk(items: list[RunbookStep], top_level: bool, path: str) -> None:
        for i, step in enumerate(items):
            where = f"{path}[{i}]"
            if step.id in seen:
                raise RunbookParseError(f"Duplicate step id: '{step.id}'", f"{where}.id")
            seen.add(step.id)
            if isinstance(step, ManualStep) and not top_level:
                raise RunbookParseError(
                    "MANUAL steps are only allowed at the top level of a runbook",
                    f"{where}.type",
                )
            if isinstance(step, ParallelStep):
                _walk(step.steps, False, f"{where}.steps")
            if isinstance(step, ConditionalStep):
                _walk(step.on_true, False, f"{where}.on_true")
                _walk(step.on_false, False, f"{where}.on_false")
            _walk(step.rollback, False, f"{where}.rollback")

    _walk(steps, True, "steps")


def _parse_parameters(items: Any) -> list[RunbookParameter]:
    if not isinstance(items, list):
        raise RunbookParseError("Parameters must be a list", "parameters")

    params = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise RunbookParseError("Parameter must be a dictionary", f"parameters[{i}]")
        data = _normalize_mapping(item)
        if isinstance(data.get("type"), str):
            data["type"] = data["type"].lower()
        _validate(data, PARAMETER_SCHEMA)
        param = RunbookParameter(
            name=data["name"],
            type=ParameterType(data.get("type", "string")),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            options=list(data.get("options") or []),
            validation=data.get("validation"),
            description=data.get("description"),
        )
        if param.type == ParameterType.SELECT and not param.options:
            raise RunbookParseError(
                "select parameters require options", f"parameters[{i}].options"
            )
        params.append(param)
    return params


def parse_runbook(data: Any) -> Runbook:
    """
    Build a Runbook from its dict (wire/storage) form.

    Raises:
        RunbookParseError: If any part of the definition is invalid
    """
    if not isinstance(data, dict):
        raise RunbookParseError("Runbook must be a dictionary/object")

    name = data.get("name")
    if not name:
        raise RunbookParseError("Runbook name is required", "name")

    steps_data = data.get("steps")
    if not steps_data:
        raise RunbookParseError("Runbook must have at least one step", "steps")
    if not isinstance(steps_data, list):
        raise RunbookParseError("Steps must be a list", "steps")

    steps: list[RunbookStep] = []
    for i, step_data in enumerate(steps_data):
        try:
            steps.append(parse_step(step_data))
        except RunbookParseError as e:
            raise RunbookParseError(f"Step {i + 1}: {e.message}", e.field)

    _check_step_tree(steps)

    try:
        status = RunbookStatus(str(data.get("status", "DRAFT")).upper())
        environment = Environment(str(data.get("environment", "DEVELOPMENT")).upper())
    except ValueError as e:
        raise RunbookParseError(str(e), "status")

    try:
        version = int(data.get("version", 1))
    except (ValueError, TypeError):
        raise RunbookParseError("Version must be an integer", "version")

    timeout = data.get("timeout_seconds", data.get("timeoutSeconds"))
    if timeout is not None:
        try:
            timeout = _parse_duration(timeout)
        except ValueError as e:
            raise RunbookParseError(str(e), "timeout_seconds")

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise RunbookParseError("Variables must be a dictionary", "variables")

    return Runbook(
        name=str(name),
        steps=steps,
        runbook_id=data.get("runbook_id"),
        description=str(data.get("description") or ""),
        status=status,
        environment=environment,
        version=version,
        is_latest=bool(data.get("is_latest", True)),
        parameters=_parse_parameters(data.get("parameters") or []),
        variables=dict(variables),
        timeout_seconds=timeout,
        created_by=data.get("created_by"),
    )


def parse_runbook_yaml(yaml_content: str) -> Runbook:
    """
    Parse a runbook YAML definition.

    Example YAML format:
        name: restart-api
        environment: PRODUCTION
        timeout_seconds: 15m
        parameters:
          - name: SERVICE
            type: string
            required: true
        steps:
          - id: drain
            name: Drain traffic
            type: HTTP
            url: https://lb.internal/pools/${SERVICE}/drain
            method: POST
            headers:
              Authorization: "Bearer ${secrets.LB_TOKEN}"
            on_failure: RETRY
            retry: {max_attempts: 3, delay_ms: 500}
          - id: approve
            name: Confirm restart
            type: MANUAL
            expires_after: 30m
          - id: restart
            name: Restart
            type: SHELL
            command: systemctl
            args: [restart, "${SERVICE}"]
            on_failure: ROLLBACK
    """
    if not yaml_content or not yaml_content.strip():
        raise RunbookParseError("Runbook YAML content cannot be empty")

    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise RunbookParseError(f"Invalid YAML syntax: {e}")

    return parse_runbook(data)


def parse_runbook_json(json_content: str) -> Runbook:
    """Parse a runbook JSON definition (the editor's wire format)."""
    if not json_content or not json_content.strip():
        raise RunbookParseError("Runbook JSON content cannot be empty")

    try:
        data = json.loads(json_content)
    except json.JSONDecodeError as e:
        raise RunbookParseError(f"Invalid JSON syntax: {e}")

    return parse_runbook(data)


def validate_runbook_yaml(yaml_content: str) -> list[str]:
    """
    Validate a runbook YAML definition without returning the parsed result.

    Returns:
        List of error messages (empty if valid)
    """
    errors: list[str] = []
    try:
        parse_runbook_yaml(yaml_content)
    except RunbookParseError as e:
        errors.append(str(e))
    return errors


def is_valid_runbook_yaml(yaml_content: str) -> bool:
    return len(validate_runbook_yaml(yaml_content)) == 0
