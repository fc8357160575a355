"""Parallel step executor.

Fans the child steps out onto a dedicated thread pool. A semaphore bounds
how many children run at once (max_concurrency; unbounded by default), and
the step does not return until every dispatched child has finished or the
step deadline has passed.

Failure policy:
- default: wait for all children, then fail if any failed
- fail_fast: once a child fails, children that have not started are
  skipped (and recorded as skipped)

Children inherit the step deadline, so subprocesses and requests they run
are cut off when it passes. Children still waiting for a slot at that point
are skipped and the step fails.

Each child runs in a copy of the submitting thread's context, so its log
records keep the execution fields and its span stays under the parallel
step's span.

Usage:
    from Conductor.Core.runbook.executors.parallel import execute_parallel_step

    outcome = execute_parallel_step(step, context)
"""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.runbook.models import ExecutionContext, StepOutcome
from Conductor.Core.runbook_parser import ParallelStep, RunbookStep

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

SKIPPED = "skipped"
TIMED_OUT = "timed out"


def execute_parallel_step(step: ParallelStep, context: ExecutionContext) -> StepOutcome:
    """Run all children concurrently and aggregate their outcomes."""
    if context.run_children is None:
        return StepOutcome.failure("No child runner available for parallel step")

    run_children = context.run_children
    limit = step.max_concurrency or len(step.steps)
    semaphore = threading.Semaphore(limit)
    failed = threading.Event()

    logger.log(
        level=20,
        msg=f"Parallel step '{step.id}': {len(step.steps)} children, "
        f"max_concurrency={limit}, fail_fast={step.fail_fast}",
    )

    def run_child(child: RunbookStep) -> StepOutcome:
        with semaphore:
            if context.expired or (step.fail_fast and failed.is_set()):
                if context.skip_child is not None:
                    context.skip_child(child, context)
                return StepOutcome.failure(SKIPPED)
            outcome = run_children([child], context)
            if not outcome.succeeded:
                failed.set()
            return outcome

    pool = ThreadPoolExecutor(
        max_workers=len(step.steps), thread_name_prefix=f"parallel-{step.id}"
    )
    try:
        futures = [
            (child, pool.submit(contextvars.copy_context().run, run_child, child))
            for child in step.steps
        ]
        _, pending = wait([future for _, future in futures], timeout=context.remaining())
    finally:
        # Children still running are bounded by the same deadline
        pool.shutdown(wait=False, cancel_futures=True)

    timed_out = bool(pending)
    results: dict[str, StepOutcome] = {}
    for child, future in futures:
        if future in pending:
            results[child.id] = StepOutcome.failure(TIMED_OUT)
        else:
            results[child.id] = future.result()

    statuses: dict[str, str] = {}
    errors: dict[str, str] = {}
    for child_id, outcome in results.items():
        if outcome.succeeded:
            statuses[child_id] = "success"
        elif outcome.error == SKIPPED:
            statuses[child_id] = SKIPPED
        else:
            statuses[child_id] = "failure"
            errors[child_id] = outcome.error or "failed"

    output = {
        "succeeded": sum(1 for s in statuses.values() if s == "success"),
        "failed": len(errors),
        "skipped": sum(1 for s in statuses.values() if s == SKIPPED),
        "children": statuses,
    }

    if timed_out:
        logger.log(
            level=30,
            msg=f"Parallel step '{step.id}' hit its step timeout with "
            f"{len(pending)} child step(s) unfinished",
        )
        return StepOutcome.failure(
            f"Step timed out with {len(pending)} child step(s) still running", output
        )

    if errors:
        summary = "; ".join(f"{cid}: {err}" for cid, err in errors.items())
        logger.log(level=30, msg=f"Parallel step '{step.id}' failed: {summary}")
        return StepOutcome.failure(f"{len(errors)} child step(s) failed: {summary}", output)

    return StepOutcome.success(output)
