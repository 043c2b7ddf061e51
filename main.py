"""
KAIJU TRADER — Main Entry Point
Validates configuration, then serves the engine behind the FastAPI adapter.
"""
import sys

import uvicorn
from kaiju_trader.config.settings import get_settings, validate_settings
from kaiju_trader.utils.errors import ConfigurationError
from kaiju_trader.utils.logger import setup_logging, get_logger

logger = get_logger("main")


def run_api() -> int:
    """Run the FastAPI application."""
    setup_logging()
    settings = get_settings()
    try:
        validate_settings(settings)
    except ConfigurationError as e:
        logger.error("invalid_configuration", error=str(e))
        return 1

    logger.info("starting_kaiju_trader", version=settings.version, port=settings.port,
                mode=settings.trading.mode)
    uvicorn.run(
        "kaiju_trader.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
    return 0


if __name__ == "__main__":
    sys.exit(run_api())
