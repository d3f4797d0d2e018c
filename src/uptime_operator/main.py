"""Main entry point for the UptimeRobot deletion worker.

Scans the resource store for records that are being deleted and still
carry the finalizer, then runs one independent worker per resource until
each is finalized or a shutdown signal arrives. Workers share no mutable
state; the only shared state is the records themselves.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .cleanup import CleanupOrchestrator
from .client import UptimeRobotClient
from .conditions import LoggingEventRecorder
from .config import ConfigurationError, OperatorConfig
from .errors import ManifestError, ResourceNotFoundError
from .finalizer import FinalizeResult, FinalizerHandler
from .models import ResourceRef
from .store import YamlResourceStore

logger = logging.getLogger(__name__)

_RESERVED_LOG_ATTRS = frozenset(
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

        # Extra fields passed via extra={...}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def find_pending_deletions(store: YamlResourceStore) -> list[ResourceRef]:
    """Refs of records being deleted that still hold a finalizer.

    Manifests that cannot be read are logged and skipped so one broken file
    does not stop the others from being finalized.
    """
    pending: list[ResourceRef] = []
    for ref in await store.list_refs():
        try:
            record = await store.get(ref)
        except (ManifestError, ResourceNotFoundError) as e:
            logger.warning(
                "Skipping unreadable resource",
                extra={"resource": str(ref), "error": str(e), "error_type": type(e).__name__},
            )
            continue
        if record.is_deleting and record.metadata.finalizers:
            pending.append(ref)
    return pending


async def run_deletions(
    config: OperatorConfig,
    shutdown: asyncio.Event,
    store: YamlResourceStore | None = None,
    client: UptimeRobotClient | None = None,
) -> dict[ResourceRef, FinalizeResult]:
    """Finalize every pending deletion, one task per resource."""
    store = store or YamlResourceStore(config.store_dir)
    client = client or UptimeRobotClient.from_config(config)
    orchestrator = CleanupOrchestrator.from_config(config, store, LoggingEventRecorder())
    handler = FinalizerHandler(store, orchestrator)

    try:
        refs = await find_pending_deletions(store)
        logger.info(
            "Pending deletions found", extra={"count": len(refs)}
        )
        results = await asyncio.gather(
            *(
                handler.run(ref, lambda record: client.delete_action_for(record, shutdown), shutdown)
                for ref in refs
            )
        )
    finally:
        await client.aclose()

    return dict(zip(refs, results, strict=True))


async def main() -> int:
    """Run the deletion worker.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = OperatorConfig.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level)
    logger.info(
        "Starting UptimeRobot deletion worker",
        extra={
            "api_url": config.api_url,
            "store_dir": str(config.store_dir),
            "cleanup_timeout_seconds": config.cleanup_timeout_seconds,
            "max_attempts": config.retry.max_attempts,
        },
    )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        results = await run_deletions(config, shutdown)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    unfinished = [str(ref) for ref, result in results.items() if not result.done]
    if unfinished:
        logger.warning("Stopped with unfinished deletions", extra={"resources": unfinished})
        return 3

    logger.info("Deletion worker stopped", extra={"finalized": len(results)})
    return 0


def run() -> None:
    """Entry point for the deletion worker."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
