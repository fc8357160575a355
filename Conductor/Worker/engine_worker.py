import time

from prometheus_client import start_http_server as start_metrics_server

from config import get_config
from Conductor.Core.engine import RunbookEngine
from Conductor.Core.exceptions import ConductorError, ConfigurationError
from Conductor.Core.logging_config import configure_logging, get_logger
from Conductor.Core.telemetry import init_worker_telemetry, shutdown_telemetry

# Log Setup
configure_logging()
logger = get_logger(__name__)

# Main loop tick; sweeps run on their own configured intervals
TICK_SECONDS = 1.0


def run_sweeps(engine, last_runs, now):
    """Run the scheduler and approval-expiry sweeps that are due."""
    worker_config = get_config().worker

    if now - last_runs["scheduler"] >= worker_config.scheduler_interval_seconds:
        last_runs["scheduler"] = now
        try:
            fired = engine.run_scheduler()
            if fired:
                logger.log(level=20, msg=f"Scheduler enqueued {fired} execution(s)")
        except ConductorError as e:
            logger.log(level=40, msg=f"Scheduler sweep failed: {e}")

    if now - last_runs["approvals"] >= worker_config.approval_sweep_interval_seconds:
        last_runs["approvals"] = now
        try:
            expired = engine.expire_approvals()
            if expired:
                logger.log(level=20, msg=f"Expired {expired} approval(s)")
        except ConductorError as e:
            logger.log(level=40, msg=f"Approval expiry sweep failed: {e}")


def main():
    config = get_config()
    config.validate_or_exit()
    config.log_config()

    if not init_worker_telemetry(service_name="conductor-worker"):
        logger.log(level=30, msg="Worker running without tracing")

    metrics_port = config.worker.metrics_port
    try:
        start_metrics_server(metrics_port)
        logger.log(level=20, msg=f"Metrics server started on port {metrics_port}")
    except OSError as e:
        logger.log(level=40, msg=f"Failed to start metrics server: {e}")

    engine = RunbookEngine()
    try:
        engine.start()
    except ConfigurationError as e:
        logger.log(level=50, msg=f"Engine failed to start: {e}")
        raise SystemExit(1)

    last_runs = {"scheduler": 0.0, "approvals": 0.0}
    try:
        while True:
            run_sweeps(engine, last_runs, time.monotonic())
            time.sleep(TICK_SECONDS)
    except KeyboardInterrupt:
        logger.log(level=20, msg="Worker shutting down...")
        engine.stop(wait=True)
        shutdown_telemetry()


if __name__ == "__main__":
    main()
