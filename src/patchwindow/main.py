"""Main entry point for the patch window job.

The job is one-shot: an external scheduler starts it every few minutes. Each
invocation takes the run lock, reconciles once, and exits.

Exit codes:
    0: Run completed (including "no pending tasks" and per-member failures)
    1: Configuration error, ledger unreachable, or scheduler unreadable
    3: Another run holds the lock
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import ExitStack
from datetime import UTC, datetime
from functools import partial

from sqlalchemy.engine import Engine

from .config import DEFAULT_LOG_SINK, Config, ConfigurationError
from .engine import ReconciliationEngine, RunSummary
from .groups import GroupResolver, HttpMembershipDirectory
from .identity import IdentityResolver, VSphereClient, resolve_dns
from .lock import RunLock, RunLockHeldError
from .orion import MonitoringGateway, NodeDirectory, SwisClient
from .store import DatastoreError, WindowStore, create_store_engine
from .tasks import PowerShellTaskScheduler, SchedulerError, TaskSource

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 3

# Python level name -> severity name written to the sink
SEVERITY_NAMES = {
    "DEBUG": "Information",
    "INFO": "Information",
    "WARNING": "Warning",
    "ERROR": "Error",
    "CRITICAL": "Error",
}

_RESERVED_RECORD_FIELDS = frozenset(
    (
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
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON records tagged with the sink and operation source."""

    def __init__(self, sink: str) -> None:
        super().__init__()
        self.sink = sink

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "sink": self.sink,
            "severity": SEVERITY_NAMES.get(record.levelname, "Information"),
            "level": record.levelname,
            "source": getattr(record, "source", record.name),
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(sink: str = DEFAULT_LOG_SINK) -> None:
    """Configure structured JSON logging to stdout.

    Calling again replaces the handler, so the sink name can be switched
    once configuration is loaded.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler.formatter, JsonFormatter):
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(sink))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from HTTP and database libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


def build_engine(
    config: Config, stack: ExitStack, db_engine: Engine | None = None
) -> ReconciliationEngine:
    """Wire the production collaborators. Clients are closed by ``stack``."""
    if db_engine is None:
        db_engine = create_store_engine(config.database_url, config.request_timeout_seconds)
    store = WindowStore(db_engine)

    directory = HttpMembershipDirectory(
        config.directory_url,
        token=config.directory_token,
        timeout_seconds=config.request_timeout_seconds,
        verify_tls=config.verify_tls,
    )
    stack.callback(directory.close)

    swis = SwisClient(
        config.orion_url,
        config.orion_username,
        config.orion_password,
        timeout_seconds=config.request_timeout_seconds,
        verify_tls=config.verify_tls,
    )
    stack.callback(swis.close)

    vsphere = VSphereClient(
        config.vcenter_username,
        config.vcenter_password,
        timeout_seconds=config.request_timeout_seconds,
        verify_tls=config.verify_tls,
    )

    return ReconciliationEngine(
        config,
        store=store,
        task_source=TaskSource(
            PowerShellTaskScheduler(config.scheduler_timeout_seconds),
            config.task_path,
            config.group_map,
        ),
        group_resolver=GroupResolver(directory, config.group_map),
        identity_resolver=IdentityResolver(
            vsphere,
            dns_lookup=partial(resolve_dns, timeout_seconds=config.request_timeout_seconds),
        ),
        node_directory=NodeDirectory(swis),
        gateway=MonitoringGateway(swis),
    )


def execute(engine: ReconciliationEngine, lock: RunLock, now: datetime) -> int:
    """Run the engine once under the run lock and map the result to an exit code."""
    logger = logging.getLogger(__name__)

    try:
        with lock:
            summary: RunSummary = engine.run(now)
    except RunLockHeldError as e:
        logger.warning(
            "Previous run still active, exiting", extra={"source": "Run", "error": str(e)}
        )
        return EXIT_LOCKED
    except DatastoreError as e:
        logger.error("Window ledger unavailable", extra={"source": "Prune", "error": str(e)})
        return EXIT_FAILURE
    except SchedulerError as e:
        logger.error(
            "Cannot read scheduled tasks",
            extra={"source": "GetUpcomingEvents", "error": str(e)},
        )
        return EXIT_FAILURE

    logger.info(
        "Patch window job finished",
        extra={"source": "Run", "scheduled": summary.scheduled, "failed": summary.failed},
    )
    return EXIT_OK


def main(database_url: str | None = None) -> int:
    """Run the job once.

    Args:
        database_url: Ledger URL overriding the environment.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env(database_url)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"source": "LoadConfig", "error": str(e)})
        return EXIT_FAILURE

    setup_logging(config.log_sink)
    logger.info(
        "Starting patch window job",
        extra={
            "source": "Run",
            "task_path": config.task_path,
            "horizon_hours": config.horizon_hours,
            "window_length_minutes": config.window_length_minutes,
        },
    )

    with ExitStack() as stack:
        try:
            engine = build_engine(config, stack)
        except Exception as e:
            logger.exception("Failed to initialize", extra={"source": "Run", "error": str(e)})
            return EXIT_FAILURE
        return execute(engine, RunLock(config.lock_file), datetime.now(UTC))


def run() -> None:
    """Entry point for the job."""
    sys.exit(main())


if __name__ == "__main__":
    run()
