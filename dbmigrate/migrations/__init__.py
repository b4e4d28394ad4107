"""
Database migration system.

This module provides forward-only, versioned schema migration:
- Migration engine driving the version loop
- Resolution of migration classes and scripts by naming convention
- SQL script splitting and execution
"""

from .engine import MigrationEngine
from .resolver import (
    ActionCandidate,
    ActionKind,
    ActionResolver,
    Direction,
    MigrationRegistry,
    Migrator,
    ResolvedAction,
    load_registry,
)
from .scaffold import create_migration_script
from .script_runner import ScriptRunner

__all__ = [
    'MigrationEngine',
    'ActionCandidate',
    'ActionKind',
    'ActionResolver',
    'Direction',
    'MigrationRegistry',
    'Migrator',
    'ResolvedAction',
    'ScriptRunner',
    'create_migration_script',
    'load_registry',
]
