"""
Logging utilities for the WB Fleet Admin orchestrator.
"""

import logging
import sys
from typing import Optional

JSON_FORMAT = (
    '{"severity": "%(levelname)s", "logger": "%(name)s", '
    '"message": "%(message)s", "timestamp": "%(asctime)s"}'
)


def setup_logging(
    verbose: bool = False, log_file: Optional[str] = "wb-fleet-admin.log"
) -> logging.Logger:
    """
    Set up logging configuration for CLI runs.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file, or None to log to stdout only

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    # paramiko logs every channel open at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)

    return logging.getLogger(__name__)


def setup_service_logging(verbose: bool = False) -> logging.Logger:
    """Set up single-line JSON-shaped logging for the HTTP service."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=JSON_FORMAT,
    )
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    return logging.getLogger(__name__)
