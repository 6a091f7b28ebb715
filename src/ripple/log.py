"""structlog setup shared by the API server, relay and worker processes.

Learn: Every module does `logger = structlog.get_logger()` and logs dotted
event names with key-value context (`logger.info("bus.connected", url=...)`).
This module only decides how those entries are rendered. Request ids and
other per-task context come from structlog.contextvars.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Configure structlog and the stdlib root logger (uvicorn logs through it)."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json:
        # ConsoleRenderer formats exceptions itself
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )
