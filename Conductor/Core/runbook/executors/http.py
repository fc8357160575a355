"""HTTP step executor.

This module handles execution of HTTP steps by making a request with
`requests` to an already template-resolved URL.

Features:
- bearer, basic and api_key authentication
- Configurable expected status codes (default [200])
- Response truncation for large responses, JSON parsing when possible

Usage:
    from Conductor.Core.runbook.executors.http import execute_http_step

    outcome = execute_http_step(step, context)
"""

import json
import logging
from typing import Any, Callable, Optional

import requests
from requests.auth import HTTPBasicAuth

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import HttpStep
from config import Constants

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

MAX_RESPONSE_BODY_SIZE = Constants.MAX_RESPONSE_BODY_SIZE


def _parse_body(text: str) -> Any:
    """JSON-decode a response body, or return it truncated as text."""
    if len(text) <= MAX_RESPONSE_BODY_SIZE:
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text[:MAX_RESPONSE_BODY_SIZE] + "...[truncated]"


def _build_request(step: HttpStep, timeout: float) -> dict[str, Any]:
    headers = dict(step.headers)
    kwargs: dict[str, Any] = {"method": step.method, "url": step.url}

    if step.body is not None:
        if isinstance(step.body, (dict, list)):
            kwargs["json"] = step.body
        else:
            kwargs["data"] = str(step.body)

    if step.auth:
        if step.auth.type == "bearer":
            headers["Authorization"] = f"Bearer {step.auth.token}"
        elif step.auth.type == "basic":
            kwargs["auth"] = HTTPBasicAuth(step.auth.username or "", step.auth.password or "")
        elif step.auth.type == "api_key":
            headers[step.auth.header] = step.auth.value or ""

    kwargs["headers"] = headers
    kwargs["timeout"] = timeout
    return kwargs


def execute_http_step(
    step: HttpStep,
    context: ExecutionContext,
    http_client: Optional[Callable[..., requests.Response]] = None,
) -> StepOutcome:
    """
    Execute an HTTP step.

    Args:
        step: The resolved HttpStep to execute
        context: The current execution context
        http_client: Optional custom HTTP client for testing

    Returns:
        SUCCESS iff the response status is in expected_status_codes
    """
    client = http_client or requests.request
    timeout = context.time_budget(step.timeout_seconds)
    # The URL may carry substituted secrets
    logger.log(
        level=20,
        msg=f"HTTP step '{step.id}' (execution {context.execution_id}): "
        f"{step.method} {context.redact(step.url)}",
    )

    try:
        response = client(**_build_request(step, timeout))
    except requests.exceptions.Timeout:
        error_msg = f"Request timed out after {timeout:g}s"
        logger.log(level=30, msg=f"HTTP step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)
    except requests.exceptions.ConnectionError as e:
        error_msg = context.redact(f"Connection error: {e}")
        logger.log(level=30, msg=f"HTTP step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)
    except requests.exceptions.RequestException as e:
        error_msg = context.redact(f"Request failed: {e}")
        logger.log(level=30, msg=f"HTTP step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)

    output = {
        "status_code": response.status_code,
        "body": _parse_body(response.text or ""),
    }

    if response.status_code in step.expected_status_codes:
        logger.log(
            level=20,
            msg=f"HTTP step '{step.id}' completed successfully "
            f"(status: {response.status_code})",
        )
        return StepOutcome.success(output)

    error_msg = (
        f"Unexpected status code {response.status_code} "
        f"(expected one of {step.expected_status_codes})"
    )
    logger.log(level=30, msg=f"HTTP step '{step.id}' failed: {error_msg}")
    return StepOutcome.failure(error_msg, output)
