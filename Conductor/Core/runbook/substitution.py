"""Template substitution for step configuration.

Supports two placeholder forms inside any string field of a step:
- ${NAME}: parameter or variable binding
- ${secrets.NAME}: value from the execution's pre-resolved secret map

Placeholders with no binding are left intact so the failure is visible in the
step output rather than silently replaced with an empty string.

Usage:
    from Conductor.Core.runbook.substitution import resolve_step

    resolved = resolve_step(step, context.bindings(), context.secrets)
"""

import dataclasses
import re
from enum import Enum
from typing import Any, Dict, Optional, TypeVar

VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
SECRET_PATTERN = re.compile(r"\$\{secrets\.([A-Za-z_][A-Za-z0-9_]*)\}")

# Replacement for secret values in errors, outputs and logs
REDACTED = "***"

# Nested step lists are resolved when (and if) the child runs
_CHILD_STEP_FIELDS = frozenset({"steps", "on_true", "on_false", "rollback"})

T = TypeVar("T")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute_variables(value: Any, context: Dict[str, Any]) -> Any:
    """
    Substitute ${VAR_NAME} placeholders in a value.

    Args:
        value: Value to substitute (string, dict, list, or other)
        context: Dictionary of variable values

    Returns:
        Value with variables substituted
    """
    if isinstance(value, Enum):
        return value

    if isinstance(value, str):

        def replace_var(match: re.Match) -> str:
            replacement = context.get(match.group(1))
            if replacement is not None:
                return _stringify(replacement)
            return match.group(0)

        return VARIABLE_PATTERN.sub(replace_var, value)

    elif isinstance(value, dict):
        return {
            substitute_variables(k, context): substitute_variables(v, context)
            for k, v in value.items()
        }

    elif isinstance(value, list):
        return [substitute_variables(item, context) for item in value]

    return value


def substitute_secrets(value: Any, secrets: Dict[str, str]) -> Any:
    """Substitute ${secrets.NAME} placeholders from an already-decrypted map."""
    if isinstance(value, Enum):
        return value

    if isinstance(value, str):

        def replace_secret(match: re.Match) -> str:
            secret = secrets.get(match.group(1))
            return secret if secret is not None else match.group(0)

        return SECRET_PATTERN.sub(replace_secret, value)

    elif isinstance(value, dict):
        return {
            substitute_secrets(k, secrets): substitute_secrets(v, secrets)
            for k, v in value.items()
        }

    elif isinstance(value, list):
        return [substitute_secrets(item, secrets) for item in value]

    return value


def substitute_all(
    value: Any, context: Dict[str, Any], secrets: Optional[Dict[str, str]] = None
) -> Any:
    """Substitute variables first, then secrets."""
    result = substitute_variables(value, context)
    if secrets:
        result = substitute_secrets(result, secrets)
    return result


def find_secret_references(value: Any) -> set[str]:
    """Names of all secrets referenced anywhere in a value."""
    if isinstance(value, str):
        return set(SECRET_PATTERN.findall(value))
    if isinstance(value, dict):
        names: set[str] = set()
        for k, v in value.items():
            names |= find_secret_references(k) | find_secret_references(v)
        return names
    if isinstance(value, list):
        names = set()
        for item in value:
            names |= find_secret_references(item)
        return names
    return set()


def resolve_step(step: T, context: Dict[str, Any], secrets: Optional[Dict[str, str]] = None) -> T:
    """
    Return a copy of a step dataclass with every templated field resolved.

    The original step is not modified; runbook definitions stay immutable.
    """
    changes: dict[str, Any] = {}
    for f in dataclasses.fields(step):  # type: ignore[arg-type]
        if f.name in _CHILD_STEP_FIELDS:
            continue
        current = getattr(step, f.name)
        if dataclasses.is_dataclass(current) and not isinstance(current, type):
            changes[f.name] = resolve_step(current, context, secrets)
        elif isinstance(current, (str, dict, list)) and not isinstance(current, Enum):
            changes[f.name] = substitute_all(current, context, secrets)
    return dataclasses.replace(step, **changes)  # type: ignore[type-var]


def redact_secrets(value: Any, secrets: Optional[Dict[str, str]]) -> Any:
    """
    Mask every resolved secret value inside a string, dict or list.

    Used on step errors, outputs and log text before they leave the
    execution, so a secret substituted into a URL or echoed by a command is
    never persisted. Longer values are masked first so a secret that
    contains another is not partially revealed.
    """
    values = sorted({s for s in (secrets or {}).values() if s}, key=len, reverse=True)
    if not values:
        return value
    return _redact(value, values)


def _redact(value: Any, values: list[str]) -> Any:
    if isinstance(value, Enum):
        return value
    if isinstance(value, str):
        for secret in values:
            value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {_redact(k, values): _redact(v, values) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, values) for item in value]
    return value
