import logging
import sys
import structlog
from tourfeed.core.config import settings

# Third-party loggers that are too chatty at INFO. httpx logs every request,
# which duplicates the tour_api_request event.
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
}

def _add_service_info(logger, method_name, event_dict):
    event_dict.setdefault("service", settings.PROJECT_NAME)
    event_dict.setdefault("env", settings.ENV)
    return event_dict

def _shared_processors(with_callsite: bool):
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if with_callsite:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                {
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                    structlog.processors.CallsiteParameter.LINENO,
                }
            )
        )
    return processors

def configure_logging(level: str = settings.LOG_LEVEL):
    """
    Route structlog and the standard library through one pipeline.

    Development gets a colored console renderer with call sites. Every other
    environment gets one JSON object per line tagged with service and env, so
    feed events (feed_id, generation, page) can be filtered downstream.
    """
    is_local = settings.ENV.lower() == "development"
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    if is_local:
        processors = _shared_processors(with_callsite=True) + [
            structlog.dev.ConsoleRenderer()
        ]
    else:
        processors = _shared_processors(with_callsite=False) + [
            _add_service_info,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, log_level))

    # uvicorn installs its own handlers; hand its records to the root logger instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.propagate = True
