"""Main entry point for the fleet reconciler.

Runs one reconciliation pass per configured vCenter, in order, and prints
each RunResult as a JSON line on stdout. SIGTERM/SIGINT stop the current
run cleanly (in-flight mutations finish and are verified) and skip the
remaining vCenters.

Exit codes:
    0: every run finished cleanly
    1: configuration, policy or collection/connection error
    2: a run finished with failed entries, a halt, a cancellation or
       unresolved rollbacks
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC

from .config import Config, ConfigurationError, RunOptions
from .errors import EndpointError
from .models import PolicySpec
from .records import RunResult
from .reconciler import FleetReconciler
from .spec_loader import SpecLoadError, load_policy
from .vsphere import VSphereEndpoint, VSphereHealthSignal, VSphereSession

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INCOMPLETE = 2

HALT_REASON_CONNECTION = "connection_failed"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            if hasattr(record, "__dict__"):
                for key, value in record.__dict__.items():
                    if key not in (
                        "name",
                        "msg",
                        "args",
                        "created",
                        "filename",
                        "funcName",
                        "levelname",
                        "levelno",
                        "lineno",
                        "module",
                        "msecs",
                        "pathname",
                        "process",
                        "processName",
                        "relativeCreated",
                        "stack_info",
                        "exc_info",
                        "exc_text",
                        "thread",
                        "threadName",
                        "taskName",
                        "message",
                    ):
                        log_data[key] = value

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    # Logs go to stderr; stdout carries the RunResult records
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the vSphere SDK
    logging.getLogger("pyVmomi").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def exit_code_for(results: list[RunResult]) -> int:
    """Fold the outcome of every run into one process exit code."""
    if any(result.error is not None for result in results):
        return EXIT_ERROR
    if any(not result.success or result.cancelled for result in results):
        return EXIT_INCOMPLETE
    return EXIT_OK


async def reconcile_host(
    config: Config,
    host: str,
    policy: PolicySpec,
    options: RunOptions,
    cancel_event: asyncio.Event,
) -> RunResult:
    """Connect to one vCenter and run one reconciliation pass against it."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    session = VSphereSession(
        host,
        config.username,
        config.password,
        port=config.port,
        verify_ssl=config.verify_ssl,
    )

    try:
        await loop.run_in_executor(None, session.connect)
    except EndpointError as e:
        logger.error(
            "Failed to connect to vCenter",
            extra={"host": host, "error": str(e), "error_type": type(e).__name__},
        )
        return RunResult(
            endpoint=host,
            field_name=policy.field_name,
            desired_value=policy.desired_value,
            dry_run=options.dry_run,
            halted=True,
            halt_reason=HALT_REASON_CONNECTION,
            error=str(e),
            error_type=type(e).__name__,
        ).finalize()

    try:
        endpoint = VSphereEndpoint(session)
        reconciler = FleetReconciler(
            endpoint,
            performance_signal=VSphereHealthSignal(session, endpoint.error_counter),
            cancel_event=cancel_event,
        )
        return await reconciler.execute(
            policy.to_scope_filter(),
            policy.desired_value,
            options,
            field_name=policy.field_name,
            mutable_predicate=policy.mutable_predicate(),
            policy_file=config.policy_file,
        )
    finally:
        await loop.run_in_executor(None, session.close)


async def reconcile_all(
    config: Config,
    policy: PolicySpec,
    options: RunOptions,
    cancel_event: asyncio.Event,
) -> list[RunResult]:
    """Reconcile every configured vCenter in sequence.

    Once cancellation is requested, vCenters not yet started are skipped.
    """
    logger = logging.getLogger(__name__)
    results: list[RunResult] = []
    for host in config.vcenter_hosts:
        if cancel_event.is_set():
            logger.warning("Cancelled, skipping vCenter", extra={"host": host})
            continue
        results.append(await reconcile_host(config, host, policy, options, cancel_event))
    return results


def print_results(results: list[RunResult]) -> None:
    for result in results:
        sys.stdout.write(json.dumps(result.to_dict()) + "\n")
    sys.stdout.flush()


async def main() -> int:
    """Run the reconciler.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ERROR

    try:
        policy = load_policy(config.policy_file)
    except SpecLoadError as e:
        # Policy loading/validation failed - user configuration error
        logger.error(
            "Policy loading failed",
            extra={"error": str(e), "policy_file": str(config.policy_file)},
        )
        return EXIT_ERROR

    try:
        options = policy.run_options(config.run_options())
    except ConfigurationError as e:
        logger.error("Invalid run options", extra={"error": str(e)})
        return EXIT_ERROR

    logger.info(
        "Starting fleet reconciler",
        extra={
            "vcenter_hosts": list(config.vcenter_hosts),
            "field_name": policy.field_name,
            "desired_value": policy.desired_value,
            "batch_size": options.batch_size,
            "dry_run": options.dry_run,
        },
    )

    # Set up signal handlers for graceful shutdown
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        results = await reconcile_all(config, policy, options, cancel_event)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_ERROR

    print_results(results)
    exit_code = exit_code_for(results)
    logger.info(
        "Fleet reconciler stopped",
        extra={"runs": len(results), "exit_code": exit_code},
    )
    return exit_code


def run() -> None:
    """Entry point for the fleet-reconciler command."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
