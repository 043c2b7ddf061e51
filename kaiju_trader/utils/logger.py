"""
KAIJU TRADER — Structured Logging
structlog event-name logging shared by every component. Each logger is bound
to its component name; process-wide context (service, trading mode) is merged
from contextvars.
"""
import logging
import sys
from typing import Optional

import structlog

from kaiju_trader.config.settings import AppSettings, get_settings

# Client libraries that log every request at INFO
_NOISY_LIBRARIES = ("ccxt", "web3", "aiohttp.access", "urllib3", "asyncio")

_configured = False


def setup_logging(settings: Optional[AppSettings] = None) -> None:
    """Configure structlog and the stdlib root logger once per process."""
    global _configured
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(
        service=settings.app_name,
        mode=settings.trading.mode,
    )

    if not _configured:
        logging.basicConfig(format="%(name)s %(levelname)s %(message)s",
                            stream=sys.stdout, level=log_level)
        for name in _NOISY_LIBRARIES:
            logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
    _configured = True


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger bound to a component name, e.g. get_logger("risk_manager")."""
    return structlog.get_logger(component=name or "kaiju_trader")
