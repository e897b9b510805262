"""Main entry point for the IONOS Cloud Cluster API infrastructure provider.

Wires the durable state (resource store snapshot and Request Tracker file
under STATE_DIR), the cloud client factory and the manager together, then
runs until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .cloud import CloudClientFactory
from .config import Config, ConfigurationError
from .manager import Manager
from .store import MemoryResourceStore
from .tracker import JsonFileTrackerStore, RequestTracker

# LogRecord attributes that are not structured extra fields
_RESERVED_RECORD_FIELDS = frozenset(
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
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_manager(config: Config) -> tuple[Manager, CloudClientFactory]:
    """Create the manager and its collaborators from ``config``."""
    config.state_dir.mkdir(parents=True, exist_ok=True)
    store = MemoryResourceStore(config.store_state_path)
    tracker = RequestTracker(JsonFileTrackerStore(config.tracker_state_path))
    clients = CloudClientFactory(config)
    return Manager(config, store, tracker, clients), clients


async def main(config: Config | None = None) -> int:
    """Run the provider.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    logger.info(
        "Starting IONOS Cloud infrastructure provider",
        extra={
            "api_url": config.api_url,
            "state_dir": str(config.state_dir),
            "workers": config.workers,
        },
    )

    try:
        manager, clients = build_manager(config)
    except (OSError, ValueError) as e:
        # Unreadable state files or a state dir we cannot create
        logger.error(
            "Failed to initialize manager",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        clients.close()

    logger.info("Provider stopped")
    return 0


def run() -> None:
    """Entry point for the provider process."""
    setup_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
