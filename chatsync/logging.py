import logging
import os
import sys

import structlog


def setup_logging(debug: bool = False) -> None:
    """Configure stdlib logging and structlog with JSON output.

    The level comes from ``CHATSYNC_LOG_LEVEL`` (default ``INFO``);
    ``debug=True`` forces ``DEBUG``.
    """
    if debug:
        level = logging.DEBUG
    else:
        level_name = os.getenv("CHATSYNC_LOG_LEVEL", "INFO").upper()
        level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(level=level, stream=sys.stdout, force=True)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
