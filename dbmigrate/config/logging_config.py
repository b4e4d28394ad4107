"""
Migration logging configuration.

Database context (product name, current run) is attached to records through
MigrationLoggerAdapter; SafeFormatter keeps handlers working for records
emitted outside of a migration run.
"""

import logging
from typing import Dict, Any, Optional

# Statement text is cut to this length in debug logs
MAX_LOGGED_STATEMENT = 200


class SafeFormatter(logging.Formatter):
    """Custom formatter that provides default values for missing fields."""

    def format(self, record):
        # Provide default values for missing fields
        if not hasattr(record, 'database_context'):
            record.database_context = 'db'
        if not hasattr(record, 'run_id'):
            record.run_id = 'no_run'

        return super().format(record)


def log_statement(logger: logging.Logger, statement: str, line: Optional[int] = None,
                  duration: Optional[float] = None) -> None:
    """
    Log an executed script statement at debug level.

    Args:
        logger: Logger instance
        statement: SQL text that was executed
        line: Script line on which the statement completed
        duration: Execution time in seconds
    """
    if not logger.isEnabledFor(logging.DEBUG):
        return

    if len(statement) > MAX_LOGGED_STATEMENT:
        statement = statement[:MAX_LOGGED_STATEMENT] + '...'

    message = f"Executed statement: {statement}"
    if line is not None:
        message += f" (line {line})"
    if duration is not None:
        message += f" in {duration:.3f}s"
    logger.debug(message)


class MigrationLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds the database product name to log records.

    The product name is resolved lazily because it is only known once the
    run connection is open.
    """

    def __init__(self, logger: logging.Logger, extra: Dict[str, Any] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        """Add database context to log records."""
        if 'extra' not in kwargs:
            kwargs['extra'] = {}
        kwargs['extra']['database_context'] = self.extra.get('database') or 'db'
        return msg, kwargs

    def bind_database(self, database: str) -> None:
        """Record the database product name for subsequent messages."""
        self.extra['database'] = database
