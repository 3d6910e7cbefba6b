"""Main entry point for the convergence engine.

One invocation is one run: load the desired-state document named by
DESIRED_STATE_PATH, converge the provider towards it, publish the report,
and exit with a code derived from the report status.

Exit codes:
    0  Converged
    1  Failed, or configuration/document errors
    2  Literal secret in the document (security violation)
    3  PartiallyConverged
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .aws_provider import AwsProviderAdapter
from .config import Config, ConfigurationError
from .observer import StateObserver
from .orchestrator import Orchestrator
from .planner import PlanError, validate
from .provenance import get_provenance_logger
from .provider import ProviderAdapter
from .reconciler import Reconciler
from .security import SecretLiteralError
from .spec_loader import SpecLoadError, document_hash, load_desired

# LogRecord attributes that are not user-supplied context
_RESERVED_RECORD_KEYS = frozenset(
    {
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
    }
)


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
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


_handler: logging.Handler | None = None


def setup_logging(
    json_output: bool = True, level: int = logging.INFO, stream: TextIO | None = None
) -> None:
    """Configure structured logging with JSON output for production.

    Calling it again replaces the handler installed by the previous call.
    """
    global _handler
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    if _handler is not None:
        root_logger.removeHandler(_handler)
    root_logger.addHandler(handler)
    _handler = handler
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_orchestrator(config: Config, provider: ProviderAdapter | None = None) -> Orchestrator:
    """Wire the provider, observer and reconciler from configuration."""
    provider = provider or AwsProviderAdapter(
        region=config.region, call_timeout_seconds=config.call_timeout_seconds
    )
    observer = StateObserver(
        provider,
        call_timeout_seconds=config.call_timeout_seconds,
        concurrency=config.observe_concurrency,
    )
    reconciler = Reconciler(
        provider,
        observer,
        max_attempts=config.max_attempts,
        retry_base_delay_seconds=config.retry_base_delay_seconds,
        call_timeout_seconds=config.call_timeout_seconds,
    )
    return Orchestrator(
        provider,
        observer=observer,
        reconciler=reconciler,
        run_timeout_seconds=config.run_timeout_seconds,
        provenance_logger=get_provenance_logger() if config.enable_audit_logging else None,
    )


async def main() -> int:
    """Run one convergence pass.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    try:
        desired = load_desired(config.desired_state_path)
        validate(desired)
    except SpecLoadError as e:
        logger.error(
            "Desired state loading failed",
            extra={"error": str(e), "path": str(config.desired_state_path)},
        )
        return 1
    except SecretLiteralError as e:
        # SECURITY: a literal secret would be persisted in function config
        logger.critical(
            "Security violation: literal secret in environment",
            extra={"error": str(e), "variable": e.variable},
        )
        return 2
    except PlanError as e:
        logger.error("Desired state is invalid", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting convergence engine",
        extra={
            "deployment": desired.name,
            "region": config.region,
            "run_timeout_seconds": config.run_timeout_seconds,
            "max_attempts": config.max_attempts,
        },
    )

    try:
        orchestrator = build_orchestrator(config)
    except Exception as e:
        logger.error(
            "Failed to initialize provider",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful cancellation between actions
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    provenance = get_provenance_logger().create_provenance(
        desired.name,
        region=config.region,
        document_hash=document_hash(config.desired_state_path),
        labels=config.labels,
    )

    try:
        report = await orchestrator.run(desired, cancel_event=cancel_event, provenance=provenance)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        orchestrator.close()

    logger.info(
        "Engine stopped",
        extra={"deployment": desired.name, "status": report.status.value},
    )
    return report.exit_code


def run() -> None:
    """Entry point for the engine."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
