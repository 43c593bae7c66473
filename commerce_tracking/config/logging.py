"""
Structured Logging for the Commerce Tracking Service

structlog renders every record, including those emitted through the
standard library by uvicorn, gunicorn and httpx, so a single stream of
JSON lines (or coloured console lines in development) leaves the process.
Secrets that end up in log context are masked before rendering.
"""

import logging
import sys
from typing import Any, List, MutableMapping, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import ProcessorFormatter, add_log_level
from structlog.typing import Processor

from commerce_tracking.config.settings import MonitoringSettings

SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn.error", "gunicorn.access")
CHATTY_LOGGERS = ("httpx", "httpcore", "aiosmtplib", "google.auth")

SECRET_KEYS = frozenset({"password", "secret", "signature", "token", "api_token", "private_key", "authorization"})
MASK = "***"


def mask_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Replace values bound under secret-looking keys"""
    for key in event_dict:
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = MASK
    return event_dict


def _pre_chain() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        mask_secrets,
    ]


def _renderer(log_format: str) -> Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return JSONRenderer()


def _attach(handler: logging.Handler, level: int) -> None:
    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # Server loggers write through the same handler instead of their own
    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.setLevel(level)
        server_logger.propagate = False

    # Per-request client logs only when debugging
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def configure_logging(
    monitoring: Optional[MonitoringSettings] = None,
    log_level: Optional[str] = None,
) -> None:
    """
    Configure structlog and the standard library root logger.

    Safe to call more than once; the root handler is replaced each time.

    Args:
        monitoring: Logging section of the settings (defaults when omitted)
        log_level: Override for ``LOG_LEVEL`` (DEBUG, INFO, WARNING, ERROR)
    """
    monitoring = monitoring or MonitoringSettings()
    level_name = (log_level or monitoring.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain = _pre_chain()
    structlog.configure(
        processors=pre_chain + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ProcessorFormatter(
            processors=[ProcessorFormatter.remove_processors_meta, _renderer(monitoring.log_format)],
            foreign_pre_chain=pre_chain,
        )
    )
    _attach(handler, level)

    structlog.get_logger(__name__).info("Logging configured", level=level_name, format=monitoring.log_format)
