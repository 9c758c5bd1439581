"""
Logging setup for the command-line entry point.

Library modules only call logging.getLogger(__name__); handlers are
attached here, once, by whoever runs the detector.

    from gridwatch.logging_utils import get_logger
    logger = get_logger("gridwatch", logging.DEBUG)
"""

import logging
import sys


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Return a named logger with a consistent format.

    Handlers are attached only on the first call for a name, so repeated
    calls never duplicate log lines. Output goes to stderr to keep stdout
    free for disturbance records.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
