"""
Logging setup shared by the CLI, the worker and the API
"""
import logging

import structlog


def configure_logging(level: str = 'INFO') -> None:
    """Configure stdlib logging and structlog once per process"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))

    # Third-party clients are chatty at INFO
    logging.getLogger('googleapiclient.discovery').setLevel(logging.WARNING)
    logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)
    logging.getLogger('httpx').setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt='iso'),
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
