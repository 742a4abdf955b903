"""Main entry point for running one lifecycle operation.

SECRETLESS ARCHITECTURE:
The gateway is authenticated with a Managed Identity token when a token
scope is configured; static secrets in the environment abort startup.

Exit codes:
    0  success
    1  configuration, spec or remote error
    2  security violation
    3  cancelled while polling (remote state unknown)
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC
from pathlib import Path

from .config import Config, ConfigurationError
from .errors import Cancelled, ConvergenceError
from .gateway import RemoteGateway
from .http_gateway import HttpRemoteGateway
from .orchestrator import MutationOrchestrator
from .poller import CancellationToken
from .security import (
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_gateway_credential,
)
from .spec_loader import SpecLoadError, load_spec
from .state import LifecycleAction

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_CANCELLED = 3


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        RESERVED = frozenset(
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

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in self.RESERVED:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Azure SDK pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_gateway(config: Config) -> HttpRemoteGateway:
    """Build the HTTP gateway, authenticated when a token scope is configured.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    if config.gateway_token_scope:
        credential = get_gateway_credential(config.managed_identity_client_id)
    else:
        enforce_secretless_architecture()
        credential = None
    return HttpRemoteGateway(
        config.gateway_endpoint,
        credential=credential,
        token_scope=config.gateway_token_scope,
        request_timeout_seconds=config.gateway_request_timeout_seconds,
    )


async def run_mutation(
    spec_path: Path,
    action: LifecycleAction = LifecycleAction.CREATE,
    *,
    wait_for_convergence: bool | None = None,
    poll_interval_seconds: float | None = None,
    timeout_seconds: float | None = None,
    config: Config | None = None,
    gateway: RemoteGateway | None = None,
) -> int:
    """Apply or delete the resource described by ``spec_path``.

    Explicit arguments override the spec, which overrides the configuration.
    SIGINT and SIGTERM cancel an in-progress convergence wait.

    Returns:
        Exit code (see module docstring).
    """
    logger = logging.getLogger(__name__)

    try:
        config = config or Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ERROR

    try:
        spec = load_spec(spec_path)
    except SpecLoadError as e:
        logger.error("Spec loading failed", extra={"error": str(e), "spec_path": str(spec_path)})
        return EXIT_ERROR

    owns_gateway = gateway is None
    if gateway is None:
        try:
            gateway = build_gateway(config)
        except SecretlessViolationError as e:
            logger.critical(
                "Security violation: credentials detected in environment",
                extra={"error": str(e)},
            )
            return EXIT_SECURITY_VIOLATION

    if wait_for_convergence is None:
        wait_for_convergence = spec.wait_for_convergence

    cancellation = CancellationToken()
    options = config.mutation_options(
        cancellation=cancellation,
        wait_for_convergence=wait_for_convergence,
        poll_interval_seconds=poll_interval_seconds,
        timeout_seconds=timeout_seconds,
    )
    orchestrator = MutationOrchestrator(gateway, minimum_poll_interval=config.poll_minimum_seconds)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        cancellation.cancel(f"received {sig.name}")

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    logger.info(
        "Starting lifecycle operation",
        extra={
            "action": action.value,
            "kind": type(spec).__name__,
            "spec_path": str(spec_path),
            "wait_for_convergence": options.wait_for_convergence,
        },
    )

    try:
        result = await orchestrator.perform_mutation(spec.to_desired_state(), options, action)
    except Cancelled as e:
        logger.warning("Lifecycle operation cancelled", extra={"error": str(e)})
        return EXIT_CANCELLED
    except ConvergenceError as e:
        logger.error(
            "Lifecycle operation failed",
            extra={"error": str(e), "error_type": type(e).__name__, "retryable": e.retryable},
        )
        return EXIT_ERROR
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        if owns_gateway and isinstance(gateway, HttpRemoteGateway):
            gateway.close()

    logger.info(
        "Lifecycle operation completed",
        extra={
            "action": result.action.value,
            "outcome": result.outcome.value,
            "surrogate_id": result.surrogate_id,
            "status": result.status,
            "items": [item.to_dict() for item in result.items],
            "duration_seconds": result.duration_seconds,
        },
    )
    return EXIT_OK
