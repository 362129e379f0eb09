"""
Logging configuration for the Fleet Correlation Engine.

Batch runs log through a RunLoggerAdapter so every line emitted by a
worker carries the short analysis-run id it belongs to.
"""

import logging
import sys
from pathlib import Path

from config.settings import settings

LOG_DIR = Path(__file__).parent.parent / "logs"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with the analysis run they belong to."""

    def process(self, msg, kwargs):
        return f"[run {self.extra['run_id'][:8]}] {msg}", kwargs


def setup_logging(name: str = "fleet_correlation") -> logging.Logger:
    """
    Set up logging configuration.

    Console output always goes to stdout; the file handler under logs/
    is only attached when LOG_TO_FILE is enabled.

    Args:
        name: Logger name

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if settings.LOG_TO_FILE:
        LOG_DIR.mkdir(exist_ok=True)
        file_handler = logging.FileHandler(LOG_DIR / f"{name}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def run_logger(run_id: str) -> RunLoggerAdapter:
    """Logger bound to a single analysis run."""
    return RunLoggerAdapter(logger, {"run_id": run_id})


# Default logger
logger = setup_logging()
