"""
Unified output system using Loguru.
Replaces print() statements and stdlib logging with dual output (console + file).
"""

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}"

# When True, log() only writes to the log sinks (`--quiet`)
_quiet = False


def setup_loguru(
    log_file: Path,
    level: str = "INFO",
    console_output: bool = False,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """
    Configure loguru with a rotating file sink and optional stderr sink.

    Args:
        log_file: Path to log file
        level: Minimum level for logging (DEBUG, INFO, WARNING, ERROR)
        console_output: Also log to stderr
        max_file_size_mb: Rotate the file once it reaches this size
        backup_count: Number of rotated files to keep
    """
    # Remove default handler
    logger.remove()

    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_file,
        rotation=f"{max_file_size_mb} MB",
        retention=backup_count,
        level=level,
        format=LOG_FORMAT,
        enqueue=False,  # Synchronous writes (thread-safe but blocking)
    )

    if console_output:
        logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    logger.info(f"Loguru initialized: {log_file} (level={level})")


def set_quiet(quiet: bool) -> None:
    """Suppress stdout echo of log() messages."""
    global _quiet
    _quiet = quiet


def log(message: str, level: str = "info") -> None:
    """
    Unified logging: writes to the log sinks AND prints to stdout.

    Use this instead of print() for user-facing messages that should also be logged.

    Args:
        message: User-facing message
        level: Log level (debug, info, warning, error)
    """
    log_func = getattr(logger.opt(depth=1), level)
    log_func(message)

    if not _quiet:
        print(message)
