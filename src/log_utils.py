"""
Logging utilities for the Worker Fleet Provisioner.
"""

import logging
import sys
from typing import Optional

NOISY_LOGGERS = ("urllib3", "google.auth", "google.auth.transport.requests")


def setup_logging(
    verbose: bool = False, log_file: Optional[str] = "fleet-provisioner.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file, None to log to stdout only

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

    # HTTP and auth libraries log every request at DEBUG.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)

    return logging.getLogger(__name__)
