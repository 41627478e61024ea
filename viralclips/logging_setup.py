import atexit
import io
import logging
import sys
from contextvars import ContextVar
from typing import Optional

import structlog

from .config import Settings

REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

_configured = False


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging infrastructure
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


def configure_logging(settings: Settings) -> logging.Logger:
    """Wire stdlib logging to stdout and LOGS_DIR/application.log, and structlog to JSON."""
    global _configured
    logger = logging.getLogger("viralclips")
    if _configured:
        return logger

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except (AttributeError, io.UnsupportedOperation):
        pass

    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    request_id_filter = RequestIdFilter()
    formatter = logging.Formatter(LOG_FORMAT)

    settings.LOGS_DIR.mkdir(parents=True, exist_ok=True)
    file_stream = open(settings.LOGS_DIR / "application.log", "a", encoding="utf-8", buffering=1)
    atexit.register(file_stream.close)

    file_handler = logging.StreamHandler(file_stream)
    file_handler.setLevel(level)
    file_handler.addFilter(request_id_filter)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.addFilter(request_id_filter)
    console_handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=[file_handler, console_handler])

    # uvicorn installs its own handlers; mirror them into the application log
    logging.getLogger("uvicorn").addHandler(file_handler)
    logging.getLogger("uvicorn.access").addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    _configured = True
    return logger


def flush_logs() -> None:
    """Force flush all log handlers."""
    for handler in logging.getLogger().handlers:
        handler.flush()
