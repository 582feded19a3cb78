#!/usr/bin/env python3
"""Main entry point for ReturnFlow: serves the API gateway."""

import uvicorn

from returnflow.common.config import get_config
from returnflow.common.logging import configure_logging, get_logger

logger = get_logger("main")


def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config)
    logger.info(f"ReturnFlow starting in {config.environment.value} mode")
    uvicorn.run(
        "returnflow.api.gateway:app",
        host=config.api_host,
        port=config.api_port,
        reload=config.debug,
        log_level=config.log_level.value.lower(),
    )


if __name__ == "__main__":
    main()
