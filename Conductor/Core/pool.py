"""Execution worker pool.

The pool owns the threads that executions run on. A background poll loop:

1. forwards pending cancel requests to in-flight executions
2. resumes PAUSED executions whose approval has been decided
3. claims QUEUED executions (FOR UPDATE SKIP LOCKED) while it has capacity

Each execution runs on its own ThreadPoolExecutor thread with its own
cancel event, so a slow execution never blocks the others. Executions can
also be handed to the pool directly (submit/resume) to skip the poll delay.

Usage:
    from Conductor.Core.pool import ExecutionPool

    pool = ExecutionPool(orchestrator, max_workers=8)
    pool.start()
    pool.submit(execution_id)
    pool.stop()
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import PersistenceError
from Conductor.Core.metrics import update_in_flight_count
from Conductor.Core.orchestrator import ExecutionOrchestrator
from Conductor.Core.runbook.models import ExecutionStatus
from config import get_config

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

ExecutionWork = Callable[[threading.Event], Any]


class ExecutionPool:
    """Runs orchestrations on a bounded set of worker threads."""

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        max_workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        worker_config = get_config().worker
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.max_workers = max_workers or worker_config.max_workers
        self.poll_interval = (
            poll_interval if poll_interval is not None else worker_config.poll_interval_seconds
        )

        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: dict[int, threading.Event] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._stop_event.is_set()

    def start(self, poll: bool = True) -> None:
        """Create the worker threads and, unless poll=False, the poll loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="conductor-exec"
        )
        if poll:
            self._poll_thread = threading.Thread(
                target=self._poll_loop, name="conductor-pool-poll", daemon=True
            )
            self._poll_thread.start()
        logger.log(
            level=20,
            msg=f"Execution pool started (max_workers={self.max_workers}, "
            f"poll_interval={self.poll_interval}s)",
        )

    def stop(self, wait: bool = True, cancel_in_flight: bool = False) -> None:
        """
        Stop polling and shut the worker threads down.

        With cancel_in_flight, running executions are signalled to stop at
        their next step boundary (or kill their subprocess).
        """
        self._stop_event.set()
        if cancel_in_flight:
            with self._lock:
                for event in self._in_flight.values():
                    event.set()

        if self._poll_thread is not None:
            self._poll_thread.join(timeout=max(self.poll_interval * 2, 1.0))
            self._poll_thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.log(level=20, msg="Execution pool stopped")

    def in_flight(self) -> list[int]:
        with self._lock:
            return list(self._in_flight)

    def has_capacity(self) -> bool:
        with self._lock:
            return len(self._in_flight) < self.max_workers

    # ========================================================================
    # Dispatch
    # ========================================================================

    def submit(self, execution_id: int) -> bool:
        """
        Claim a QUEUED execution and run it.

        The claim happens on the caller's thread, the same way poll_once
        claims, so an execution is only ever dispatched by its claimer.
        """
        if not self.running:
            logger.log(
                level=30,
                msg=f"Execution pool not running; execution {execution_id} left for later",
            )
            return False
        try:
            execution = self.store.claim_execution(execution_id, [ExecutionStatus.QUEUED])
        except PersistenceError as e:
            logger.log(level=40, msg=f"Could not claim execution {execution_id}: {e}")
            return False
        if execution is None:
            logger.log(level=10, msg=f"Execution {execution_id} not claimable (already taken)")
            return False
        if self._dispatch(
            execution_id, lambda event: self.orchestrator.run_claimed(execution, event)
        ):
            return True
        self._release_claim(execution_id)
        return False

    def resume(self, execution_id: int) -> bool:
        """Resume a PAUSED execution whose approval was decided."""
        return self._dispatch(
            execution_id, lambda event: self.orchestrator.resume(execution_id, event)
        )

    def cancel(self, execution_id: int) -> bool:
        """Cancel an execution, signalling it right away if it runs here."""
        with self._lock:
            event = self._in_flight.get(execution_id)
        if event is not None:
            event.set()
        return self.orchestrator.cancel(execution_id)

    def _dispatch(self, execution_id: int, work: ExecutionWork) -> bool:
        executor = self._executor
        if executor is None or self._stop_event.is_set():
            logger.log(
                level=30,
                msg=f"Execution pool not running; execution {execution_id} left for later",
            )
            return False

        with self._lock:
            if execution_id in self._in_flight:
                return False
            event = threading.Event()
            self._in_flight[execution_id] = event
            update_in_flight_count(len(self._in_flight))

        try:
            executor.submit(self._run_guarded, execution_id, work, event)
        except RuntimeError as e:
            # Executor shut down between the check above and the submit
            logger.log(
                level=30, msg=f"Could not dispatch execution {execution_id}: {e}"
            )
            with self._lock:
                self._in_flight.pop(execution_id, None)
                update_in_flight_count(len(self._in_flight))
            return False
        return True

    def _release_claim(self, execution_id: int) -> None:
        """Put a claimed but undispatched execution back in the queue."""
        with self._lock:
            if execution_id in self._in_flight:
                return
        try:
            if self.store.requeue_execution(execution_id):
                logger.log(
                    level=20, msg=f"Execution {execution_id} returned to the queue"
                )
        except PersistenceError as e:
            logger.log(
                level=40, msg=f"Could not return execution {execution_id} to the queue: {e}"
            )

    def _run_guarded(
        self, execution_id: int, work: ExecutionWork, event: threading.Event
    ) -> None:
        try:
            work(event)
        except Exception as e:
            logger.log(
                level=40,
                msg=f"Execution {execution_id} crashed its worker thread: {e}",
                exc_info=True,
            )
        finally:
            with self._lock:
                self._in_flight.pop(execution_id, None)
                update_in_flight_count(len(self._in_flight))

    # ========================================================================
    # Polling
    # ========================================================================

    def sync_cancellations(self) -> int:
        """Set the cancel event of in-flight executions flagged in the store."""
        flagged = self.store.get_cancel_requested(self.in_flight())
        with self._lock:
            for execution_id in flagged:
                event = self._in_flight.get(execution_id)
                if event is not None and not event.is_set():
                    logger.log(
                        level=20, msg=f"Forwarding cancel to execution {execution_id}"
                    )
                    event.set()
        return len(flagged)

    def poll_once(self) -> int:
        """
        One poll cycle.

        Returns:
            Number of executions dispatched
        """
        self.sync_cancellations()

        dispatched = 0
        for execution_id in self.store.get_resumable_executions():
            if not self.has_capacity():
                return dispatched
            if self.resume(execution_id):
                dispatched += 1

        while self.has_capacity() and not self._stop_event.is_set():
            execution = self.store.claim_next_queued()
            if execution is None:
                break
            execution_id = execution.execution_id or 0
            if self._dispatch(
                execution_id,
                lambda event, e=execution: self.orchestrator.run_claimed(e, event),
            ):
                dispatched += 1
            else:
                self._release_claim(execution_id)
                break
        return dispatched

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                dispatched = self.poll_once()
                if dispatched:
                    logger.log(level=10, msg=f"Dispatched {dispatched} execution(s)")
            except PersistenceError as e:
                logger.log(level=40, msg=f"Execution pool poll failed: {e}")
            self._stop_event.wait(self.poll_interval)
