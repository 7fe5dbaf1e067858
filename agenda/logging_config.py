import logging
import sys

import structlog

from .config import settings
from .request_context import request_id_ctx, tenant_slug_ctx


def add_request_context(logger, method_name, event_dict):
    """Stamp request id and tenant on events logged outside the middleware scope."""
    request_id = request_id_ctx.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    tenant_slug = tenant_slug_ctx.get()
    if tenant_slug and "tenant_slug" not in event_dict:
        event_dict["tenant_slug"] = tenant_slug
    return event_dict


def setup_logging(level: str | None = None):
    resolved_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=resolved_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.LOG_JSON:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(resolved_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Engine and channel chatter stays out of the booking log.
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger("agenda").info("logging_initialized", level=logging.getLevelName(resolved_level))
