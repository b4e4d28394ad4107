"""
Migration configuration.

This module handles engine-level configuration:
- Engine defaults and version table validation
- The bundled lock statement resource
- Logging helpers for database context
"""

from .db_config import (
    get_migration_defaults,
    validate_table_name,
    load_lock_statements,
    MIGRATION_DEFAULTS,
)
from .logging_config import SafeFormatter, MigrationLoggerAdapter, log_statement

__all__ = [
    'get_migration_defaults',
    'validate_table_name',
    'load_lock_statements',
    'MIGRATION_DEFAULTS',
    'SafeFormatter',
    'MigrationLoggerAdapter',
    'log_statement',
]
