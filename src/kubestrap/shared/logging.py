"""Logging configuration for kubestrap.

Configures structlog with a human-readable console renderer for interactive
runs and JSON output when requested. Daemon output never goes through here:
each daemon writes to its own file under ``logs/``.

Events logged while a cluster run is active carry the run's root directory,
bound with :func:`bind_run`, so logs of concurrent runs on one host can be
told apart.
"""

import logging
import sys
from pathlib import Path

import structlog

# Component-level chatter that drowns out state transitions at info
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def configure_logging(
    level: str = "info",
    log_file: str | Path | None = None,
    json_output: bool = False,
) -> None:
    """Configure logging for the application.

    Called once on startup. Configures both standard logging and structlog.

    Args:
        level: Log level (debug, info, warning, error, critical)
        log_file: Optional path to an additional log file
        json_output: If True, output JSON format
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_file)))

    logging.basicConfig(level=log_level, handlers=handlers, format="%(message)s", force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=json_output),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_run(root: Path) -> None:
    """Attach the run's root directory to every subsequent event."""
    structlog.contextvars.bind_contextvars(run=str(root))


def unbind_run() -> None:
    structlog.contextvars.unbind_contextvars("run")
