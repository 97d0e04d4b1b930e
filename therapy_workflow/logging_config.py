import logging

import structlog

from therapy_workflow.config import settings


def configure_logging(level: str | None = None, json: bool | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    render_json = settings.log_json if json is None else json

    renderer = (
        structlog.processors.JSONRenderer()
        if render_json
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
