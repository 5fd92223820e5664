"""structlog setup shared by the parent and every forked worker."""

import logging
import sys

import structlog

from .config import LogConfig

__all__ = ("configure_logging", "get_logger")

logging.getLogger(__package__).addHandler(logging.NullHandler())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the standard library logger ``name``.

    Events always go through `logging`, so until an application configures it
    the library stays silent instead of printing to stdout.
    """
    return structlog.wrap_logger(logging.getLogger(name))


def configure_logging(config: LogConfig | None = None) -> None:
    """Configure structlog on top of the standard library logger.

    Forked children inherit the configuration and write to the same stderr
    as the parent, so each event carries the emitting ``pid``.

    Args:
        config: Logging configuration, defaults to `LogConfig()`.
    """

    config = config or LogConfig()
    level = logging.getLevelNamesMapping().get(config.level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.CallsiteParameterAdder({structlog.processors.CallsiteParameter.PROCESS}),
    ]

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if config.json else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
