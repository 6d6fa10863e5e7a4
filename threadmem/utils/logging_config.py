"""
Centralized logging configuration for the memory subsystem.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers that are noisy at DEBUG
_QUIET_LOGGERS = ('botocore', 'urllib3', 'opensearch', 'gremlinpython', 'aiohttp')


def _level(config: AppConfig) -> int:
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logging.basicConfig(level=_level(config), format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(_level(config), logging.WARNING))


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger
