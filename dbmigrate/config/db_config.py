"""
Migration engine configuration settings.

This module defines the engine defaults, the bundled lock statement resource
and the validation applied to settings before they reach SQL text.
"""

import re
from importlib import resources
from typing import Dict, Any, Optional

import yaml

from ..exceptions import ConfigurationError

# Engine defaults
MIGRATION_DEFAULTS = {
    'table': 'db_version',              # Version table name
    'auto': False,                      # Apply every resolvable step
    'commit_on_failure': False,         # Keep partial progress when a step fails
    'script_dir': None,                 # Filesystem base for scripts (None = cwd)
    'registry': None,                   # 'module:attribute' of a MigrationRegistry
}

# Bundled lock/unlock statements, keyed lock_<db> / unlock_<db>
LOCKS_RESOURCE = 'locks.yaml'

# Plain or schema-qualified SQL identifier
_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')
_LOCK_KEY = re.compile(r'^(lock|unlock)_[a-z0-9_]+$')


def get_migration_defaults() -> Dict[str, Any]:
    """Get engine defaults dictionary."""
    return MIGRATION_DEFAULTS.copy()


def validate_table_name(table_name: str) -> str:
    """
    Validate the version table name before it is interpolated into SQL.

    Args:
        table_name: Table name, optionally qualified with a schema

    Returns:
        Validated table name

    Raises:
        ConfigurationError: If the name is not a plain identifier
    """
    if not isinstance(table_name, str) or not _IDENTIFIER.match(table_name):
        raise ConfigurationError(f"Invalid version table name: {table_name!r}")
    return table_name


def load_lock_statements(overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Load the bundled lock statements and apply overrides.

    Args:
        overrides: Extra or replacement lock_<db>/unlock_<db> entries. An
            empty string removes the bundled entry.

    Returns:
        Dictionary of statement templates keyed lock_<db> / unlock_<db>
    """
    text = resources.files(__package__).joinpath(LOCKS_RESOURCE).read_text(encoding='utf-8')
    statements = yaml.safe_load(text) or {}

    for key, value in (overrides or {}).items():
        key = key.lower()
        if not _LOCK_KEY.match(key):
            raise ConfigurationError(f"Invalid lock statement key: {key}")
        if value:
            statements[key] = value
        else:
            statements.pop(key, None)

    return statements
