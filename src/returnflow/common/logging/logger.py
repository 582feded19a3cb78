"""Centralized logging configuration.

Modules log through ``logging.getLogger(__name__)``. Entry points call
``configure_logging`` once so every ``returnflow.*`` logger shares one
handler and the configured level.
"""

import logging
from typing import Optional

from returnflow.common.config.settings import Config, get_config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER = "returnflow"


def configure_logging(config: Optional[Config] = None) -> logging.Logger:
    """Attach the stream handler to the package logger and set its level.

    Debug mode forces DEBUG regardless of ``log_level``. Safe to call more
    than once; the handler is only added the first time.
    """
    config = config or get_config()
    root = logging.getLogger(ROOT_LOGGER)
    level = logging.DEBUG if config.debug else getattr(logging, config.log_level.value)
    root.setLevel(level)

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.propagate = False

    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the ``returnflow`` hierarchy."""
    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
