"""
dbmigrate - keep a database schema in lockstep with the client code.

The database version is stored in a single-row table. Each step from
version N to N+1 is a registered migration class or a SQL script found by
naming convention, applied in one transaction under an advisory lock.

Key components:
- MigrationEngine driving the run
- MigrationRegistry / Migrator for programmatic migrations
- ScriptRunner for SQL scripts
- VersionStore and LockCoordinator for bookkeeping and locking
"""

from .core import ConnectionContext, LockCoordinator, LockStatementRegistry, VersionStore
from .exceptions import (
    MigrationError,
    ConfigurationError,
    ConnectionError,
    LockError,
    VersionConsistencyError,
    VersionAdvanceError,
    ResolutionExhausted,
    StatementExecutionError,
    ScriptReadError,
    TransactionError,
    MigrationStepError,
)
from .migrations import (
    ActionCandidate,
    ActionKind,
    ActionResolver,
    Direction,
    MigrationEngine,
    MigrationRegistry,
    Migrator,
    ScriptRunner,
    create_migration_script,
    load_registry,
)

__version__ = "1.0.0"
__all__ = [
    # Engine
    "MigrationEngine",
    "MigrationRegistry",
    "Migrator",
    "Direction",
    "ActionKind",
    "ActionCandidate",
    "ActionResolver",
    "ScriptRunner",
    "create_migration_script",
    "load_registry",

    # Core components
    "ConnectionContext",
    "VersionStore",
    "LockCoordinator",
    "LockStatementRegistry",

    # Errors
    "MigrationError",
    "ConfigurationError",
    "ConnectionError",
    "LockError",
    "VersionConsistencyError",
    "VersionAdvanceError",
    "ResolutionExhausted",
    "StatementExecutionError",
    "ScriptReadError",
    "TransactionError",
    "MigrationStepError",
]
