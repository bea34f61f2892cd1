"""Logging setup for the training and prediction scripts.

Library modules only create named loggers; scripts call configure_logging
once. Records go to stderr so that tables printed on stdout stay clean, and
``warnings.warn`` calls (skipped symbols, untrained checkpoints) are routed
through the same handler.
"""
import logging
import sys
from typing import Iterable

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO/DEBUG during torch and parquet I/O
NOISY_LOGGERS = ("torch", "fsspec", "numexpr", "filelock")


def configure_logging(level: str = "INFO", quiet: Iterable[str] = NOISY_LOGGERS) -> None:
    """Configure root logging for a script run.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR); unknown names fall back to INFO
        quiet: Logger names held at WARNING unless ``level`` is DEBUG
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.captureWarnings(True)

    if numeric_level > logging.DEBUG:
        for name in quiet:
            logging.getLogger(name).setLevel(logging.WARNING)
