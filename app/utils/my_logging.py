"""Logging configuration"""
import logging
import sys
from contextvars import ContextVar

from app.config.settings import get_settings

# Set per request by app.core.middleware; "-" outside a request (workers, startup)
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")
company_id_var: ContextVar[str] = ContextVar("company_id", default="-")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s company=%(company_id)s] %(message)s"

# Provider client libraries log every request at INFO
PROVIDER_LOGGERS = ("googleapiclient.discovery", "googleapiclient.discovery_cache", "msal", "urllib3")


class RequestContextFilter(logging.Filter):
    """Stamp the current correlation and company ids on every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.company_id = company_id_var.get()
        return True


def setup_logging(verbose=True):
    """Configure application logging"""
    settings = get_settings()

    if verbose:
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    else:
        level = logging.WARNING

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler])

    for name in PROVIDER_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not verbose:
        for name in ("sqlalchemy", "alembic", "celery", "uvicorn", "uvicorn.access"):
            logger = logging.getLogger(name)
            logger.setLevel(logging.ERROR)
            logger.propagate = False
