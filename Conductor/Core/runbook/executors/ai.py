"""AI step executor.

Sends the step prompt (and optional context) to an OpenAI-compatible
chat-completions endpoint configured through CONDUCTOR_AI_* environment
variables, and returns the response text as the step output.

Usage:
    from Conductor.Core.runbook.executors.ai import execute_ai_step

    outcome = execute_ai_step(step, context)
"""

import json
import logging
from typing import Any, Callable, Optional

import requests

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import AiStep
from config import AIConfig, get_config

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

SYSTEM_PROMPTS = {
    "analyze": "You are an SRE assistant analyzing operational data for a runbook. "
    "Be concise and factual.",
    "summarize": "You are an SRE assistant. Summarize the provided information "
    "in a few sentences.",
    "generate": "You are an SRE assistant generating content for a runbook step. "
    "Return only the requested content.",
}


def _build_messages(step: AiStep) -> list[dict[str, str]]:
    system = SYSTEM_PROMPTS.get(step.action, SYSTEM_PROMPTS["analyze"])
    user = step.prompt
    if step.context is not None:
        ctx = step.context if isinstance(step.context, str) else json.dumps(
            step.context, default=str, indent=2
        )
        user = f"{step.prompt}\n\nContext:\n{ctx}"
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def _extract_text(data: Any) -> Optional[str]:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content.strip() if isinstance(content, str) else None


def execute_ai_step(
    step: AiStep,
    context: ExecutionContext,
    ai_config: Optional[AIConfig] = None,
    http_client: Optional[Callable[..., requests.Response]] = None,
) -> StepOutcome:
    """
    Execute an AI step.

    Returns:
        SUCCESS with the response text, FAILURE on backend error, timeout,
        empty response, or when no backend is configured
    """
    cfg = ai_config or get_config().ai
    if not cfg.is_configured:
        return StepOutcome.failure(
            "AI backend not configured (set CONDUCTOR_AI_API_KEY)"
        )

    client = http_client or requests.request
    timeout = min(float(cfg.timeout_seconds), context.time_budget(step.timeout_seconds))
    logger.log(
        level=20,
        msg=f"AI step '{step.id}' (execution {context.execution_id}): "
        f"action={step.action}, model={step.model or cfg.model}",
    )

    try:
        response = client(
            method="POST",
            url=cfg.endpoint,
            headers={
                "Authorization": f"Bearer {cfg.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": step.model or cfg.model,
                "messages": _build_messages(step),
                "temperature": step.temperature,
                "max_tokens": step.max_tokens,
            },
            timeout=timeout,
        )
    except requests.exceptions.Timeout:
        logger.log(level=30, msg=f"AI step '{step.id}' timed out after {timeout:g}s")
        return StepOutcome.failure(f"AI backend timed out after {timeout:g}s")
    except requests.exceptions.RequestException as e:
        error_msg = context.redact(f"AI backend request failed: {e}")
        logger.log(level=30, msg=f"AI step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)

    if response.status_code >= 400:
        error_msg = f"AI backend returned {response.status_code}: {response.text[:500]}"
        logger.log(level=30, msg=f"AI step '{step.id}' failed: {error_msg}")
        return StepOutcome.failure(error_msg)

    try:
        text = _extract_text(response.json())
    except ValueError:
        text = None

    if not text:
        logger.log(level=30, msg=f"AI step '{step.id}' got an empty response")
        return StepOutcome.failure("AI backend returned an empty response")

    return StepOutcome.success(text)
