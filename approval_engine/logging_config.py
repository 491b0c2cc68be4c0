import logging
from typing import Optional

import structlog

from approval_engine.config import Settings, get_settings

# stdlib loggers that are chatty at INFO; kept at WARNING unless DEBUG is on
_LIBRARY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "alembic", "asyncio")


def _add_service(settings: Settings):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", settings.APP_NAME)
        event_dict.setdefault("env", settings.ENVIRONMENT)
        return event_dict

    return processor


def setup_logging(level: Optional[str] = None, settings: Optional[Settings] = None):
    """Configure structlog once per process.

    Console output in development, one JSON object per line elsewhere. The
    ``correlation_id`` bound by CorrelationIdMiddleware rides along through
    ``merge_contextvars``.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    if settings.ENVIRONMENT == "development":
        renderer = structlog.dev.ConsoleRenderer()
        exc_processor = structlog.processors.format_exc_info
    else:
        renderer = structlog.processors.JSONRenderer()
        exc_processor = structlog.processors.dict_tracebacks

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_service(settings),
            exc_processor,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    library_level = logging.DEBUG if settings.DEBUG else logging.WARNING
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
