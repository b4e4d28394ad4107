"""
Logging utilities for dbmigrate.

Provides run-aware logging using Python's contextvars so every record
emitted during a migration run carries the run identifier.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .config.logging_config import SafeFormatter

# Context variable for storing the current run identifier
_run_context: ContextVar[Optional[str]] = ContextVar('run_id', default=None)

LOG_FORMAT = '%(asctime)s - [%(run_id)s] - %(database_context)s - %(name)s - %(levelname)s - %(message)s'


class RunFilter(logging.Filter):
    """Logging filter that adds the run identifier to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add run_id to the log record."""
        run_id = _run_context.get()
        record.run_id = run_id if run_id else "no_run"
        return True


def set_run_context(run_id: str) -> None:
    """
    Set the current run identifier in the logging context.

    Args:
        run_id: Identifier used for all subsequent log messages
    """
    _run_context.set(run_id)


def clear_run_context() -> None:
    """Clear the current run identifier from the logging context."""
    _run_context.set(None)


def get_run_context() -> Optional[str]:
    """
    Get the current run identifier from the logging context.

    Returns:
        The current run identifier or None if not set
    """
    return _run_context.get()


def setup_cli_logging(config: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Configure the dbmigrate logger for command line use.

    Messages go to stderr; a rotating log file is added when
    logging.log_file is configured.

    Args:
        config: Configuration dictionary with an optional 'logging' section

    Returns:
        The configured dbmigrate logger
    """
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    log_config = (config or {}).get('logging', {})
    level = log_config.get('level', 'INFO').upper()

    logger = logging.getLogger('dbmigrate')
    logger.setLevel(getattr(logging, level))

    # Remove any existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(SafeFormatter(
        '%(asctime)s - %(levelname)s - [%(database_context)s] %(message)s',
        datefmt='%H:%M:%S'
    ))
    logger.addHandler(console_handler)

    log_file = log_config.get('log_file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=log_config.get('max_log_size_mb', 10) * 1024 * 1024,
            backupCount=log_config.get('backup_count', 3)
        )
        file_handler.setFormatter(SafeFormatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    run_filter = RunFilter()
    for handler in logger.handlers:
        handler.addFilter(run_filter)

    logger.propagate = False
    return logger
