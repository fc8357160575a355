"""Conditional step executor.

Evaluates a condition against the execution context and runs the matching
branch through the orchestrator's child runner.

Supported Condition Types:
    - variable_check: compare a parameter/variable to a value
    - previous_step_status: check whether an earlier step succeeded or failed
    - expression: "<lhs> <op> <rhs>" after template resolution

Operators: ==, !=, >, <, >=, <=, contains, matches (regex search).
Numeric comparison is used when both sides parse as numbers. No code is
ever evaluated.

Usage:
    from Conductor.Core.runbook.executors.conditional import execute_conditional_step

    outcome = execute_conditional_step(step, context)
"""

import logging
import re
from typing import Any, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import Condition, ConditionalStep, ConditionType

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

EXPRESSION_PATTERN = re.compile(
    r"^\s*(.+?)\s+(==|!=|>=|<=|>|<|contains|matches)\s+(.+?)\s*$"
)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _unquote(token: str) -> str:
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    return token


def compare(lhs: Any, operator: str, rhs: Any) -> bool:
    """Apply a condition operator."""
    if operator == "contains":
        if isinstance(lhs, (list, tuple, set)):
            return rhs in lhs or _as_text(rhs) in [_as_text(x) for x in lhs]
        return _as_text(rhs) in _as_text(lhs)

    if operator == "matches":
        try:
            return re.search(_as_text(rhs), _as_text(lhs)) is not None
        except re.error as e:
            raise ValueError(f"Invalid regex '{rhs}': {e}")

    left_num, right_num = _as_number(lhs), _as_number(rhs)
    left: Any
    right: Any
    if left_num is not None and right_num is not None:
        left, right = left_num, right_num
    else:
        left, right = _as_text(lhs), _as_text(rhs)

    if operator == "==":
        return left == right
    if operator == "!=":
        return left != right
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    if operator == ">=":
        return left >= right
    if operator == "<=":
        return left <= right
    raise ValueError(f"Unknown operator: {operator}")


def evaluate_condition(condition: Condition, context: ExecutionContext) -> bool:
    """
    Evaluate a condition.

    Raises:
        ValueError: If an expression cannot be parsed or a regex is invalid
    """
    if condition.type == ConditionType.VARIABLE_CHECK:
        bindings = context.bindings()
        return compare(
            bindings.get(condition.variable or ""), condition.operator, condition.value
        )

    if condition.type == ConditionType.PREVIOUS_STEP_STATUS:
        with context.lock:
            actual = context.step_statuses.get(condition.step_id or "")
        return actual == condition.expected_status

    match = EXPRESSION_PATTERN.match(condition.expression or "")
    if not match:
        raise ValueError(f"Cannot parse expression: '{condition.expression}'")
    lhs, operator, rhs = match.groups()
    return compare(_unquote(lhs), operator, _unquote(rhs))


def execute_conditional_step(
    step: ConditionalStep, context: ExecutionContext
) -> StepOutcome:
    """
    Run on_true or on_false depending on the condition.

    The outcome is the outcome of the branch that ran; an empty branch
    succeeds. Branch steps inherit the step deadline, so a branch still
    running when it passes fails the step.
    """
    try:
        condition_met = evaluate_condition(step.condition, context)
    except ValueError as e:
        logger.log(level=30, msg=f"Conditional step '{step.id}' failed: {e}")
        return StepOutcome.failure(str(e))

    branch = step.on_true if condition_met else step.on_false
    logger.log(
        level=20,
        msg=f"Conditional step '{step.id}': condition "
        f"{'met' if condition_met else 'not met'}, running {len(branch)} step(s)",
    )
    output = {"condition_met": condition_met, "steps_executed": len(branch)}

    if not branch:
        return StepOutcome.success(output)
    if context.run_children is None:
        return StepOutcome.failure("No child runner available for branch", output)

    branch_outcome = context.run_children(branch, context)
    if branch_outcome.succeeded:
        return StepOutcome.success(output)
    if context.expired:
        logger.log(level=30, msg=f"Conditional step '{step.id}' hit its step timeout")
        return StepOutcome.failure("Step timed out while running its branch", output)
    return StepOutcome.failure(branch_outcome.error or "Branch failed", output)
