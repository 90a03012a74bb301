"""structlog configuration for laneledger processes.

Modules log through ``structlog.get_logger(__name__)`` with %-style positional
arguments; ``setup_logging`` routes those records through the stdlib so the
level filter and logger names apply.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

from laneledger.constants import LOG_LEVEL_ENV


def setup_logging(level: str | None = None, *, json_output: bool = False) -> None:
    """Configure structlog and the stdlib root logger.

    ``level`` defaults to $LANELEDGER_LOG_LEVEL, then INFO.
    """
    resolved_level = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
    numeric_level = logging.getLevelName(resolved_level)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {resolved_level}")

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level, force=True)

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
