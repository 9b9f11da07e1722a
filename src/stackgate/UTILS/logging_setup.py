"""Centralized logging setup for the CLI.

Orchestrator events go to stderr; service output goes to per-service log files.
"""
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(verbose: bool = False) -> None:
    """Configure the ``stackgate`` logger to write to the console.

    Args:
        verbose: Log at DEBUG instead of INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT)

    logger = logging.getLogger("stackgate")
    logger.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    for handler in logger.handlers:
        handler.setLevel(level)
