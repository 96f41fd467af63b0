import logging
import sys

import structlog

from scrapeflow.config.settings import get_settings

_configured = False


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog once per process."""
    global _configured
    if _configured:
        return

    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json_logs is None else json_logs

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level_name)

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        cache_logger_on_first_use=True,
    )
    _configured = True
