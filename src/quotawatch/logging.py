import logging
import logging.handlers
from pathlib import Path

import structlog

LOG_BACKUP_COUNT = 7


def setup_logging(level: "str", log_file: "Path | None" = None) -> "None":
    """
    maps string log level to logging module levels and configures
    structlog with a simple console renderer and timestamping. With a
    log file, output also goes to a file rotated daily, keeping a week.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handlers: "list[logging.Handler]" = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                log_file,
                when="midnight",
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at info
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=log_file is None),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
