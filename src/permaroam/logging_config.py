"""Logging setup shared by the CLI and the MCP server."""

import sys
from pathlib import Path

from loguru import logger


def configure_logging(*, verbose: bool = False, log_file: Path | None = None) -> None:
    """Route loguru output to stderr, and optionally to a rotating file.

    Args:
        verbose: Emit DEBUG records (window slides, search probes) instead of INFO.
        log_file: Also write full-detail records here; rotated at 5 MB.
    """
    logger.remove()
    level = "DEBUG" if verbose else "INFO"
    logger.add(sys.stderr, level=level, format="{level.icon} {message}")
    if log_file is not None:
        logger.add(
            log_file,
            level="DEBUG",
            rotation="5 MB",
            retention=3,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | {name}:{line} | {message}",
        )
