#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with settings from LOAN_SERVICING_* environment
variables (or .env).
"""

import sys

import uvicorn

from loan_servicing.config import get_config
from loan_servicing.logging_config import setup_logging


def main() -> None:
    config = get_config()
    logger = setup_logging(level=config.log_level, fmt=config.log_format, log_file=config.log_file)
    logger.info(f"Starting loan servicing API on {config.api_host}:{config.api_port}")

    try:
        uvicorn.run(
            "loan_servicing.api:create_app",
            factory=True,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        logger.info("Shutting down loan servicing API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
