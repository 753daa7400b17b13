"""alertrelay server entry point.

Configures structured logging and serves the API with uvicorn.
"""

import logging
import sys

import structlog
import uvicorn

from .api import create_app
from .config import get_settings
from .engine import AlertEngine
from .errors import ConfigValidationError


def configure_logging(level: str = "info", log_format: str = "json") -> None:
    """Configure structlog on top of the standard logging module."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Run the server."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger = structlog.get_logger()

    try:
        engine = AlertEngine.from_settings(settings)
    except ConfigValidationError as e:
        logger.error("Invalid configuration, refusing to start", problems=e.problems)
        sys.exit(1)

    app = create_app(settings, engine)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
