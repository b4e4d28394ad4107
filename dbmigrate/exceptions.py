"""
Exception hierarchy for the migration engine.

Every failure raised by dbmigrate is a MigrationError. Subclasses carry the
context needed to diagnose a failed run (versions, locators, statement text)
and are always raised from the underlying driver or I/O error.
"""

from typing import Optional


class MigrationError(Exception):
    """Base exception for all migration failures."""
    pass


class ConfigurationError(MigrationError):
    """Engine settings are missing or invalid."""
    pass


class ConnectionError(MigrationError):
    """Could not create the engine, open the connection or reset its transaction."""
    pass


class LockError(MigrationError):
    """
    Lock or unlock statement failed.

    Attributes:
        database: Database product name the statement was issued for
    """
    def __init__(self, message: str, database: Optional[str] = None):
        super().__init__(message)
        self.database = database


class VersionConsistencyError(MigrationError):
    """
    The stored version cannot be trusted or is ahead of the client.

    Attributes:
        database_version: Version found in the database (if known)
        client_version: Version the client expects (if known)
    """
    def __init__(self, message: str, database_version: Optional[int] = None,
                 client_version: Optional[int] = None):
        super().__init__(message)
        self.database_version = database_version
        self.client_version = client_version


class VersionAdvanceError(MigrationError):
    """
    Updating the version row did not affect exactly one row.

    Attributes:
        from_version: Version before the step
        to_version: Version the update tried to write
    """
    def __init__(self, from_version: int, to_version: int, detail: str = ""):
        message = f"Failed to update database version from {from_version} to {to_version}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version


class ResolutionExhausted(MigrationError):
    """
    No migration class or script exists for a version in manual mode.

    Attributes:
        version: Database version nothing could be resolved for
    """
    def __init__(self, version: int):
        super().__init__(f"No migration found: {version}")
        self.version = version


class StatementExecutionError(MigrationError):
    """
    A single statement of a migration script failed.

    Attributes:
        line: 1-based script line on which the statement completed
        statement: SQL text that was sent to the database
        locator: Script the statement came from
    """
    def __init__(self, line: int, statement: str, locator: Optional[str] = None):
        super().__init__(f"Failed to execute SQL line #{line}: {statement}")
        self.line = line
        self.statement = statement
        self.locator = locator


class ScriptReadError(MigrationError):
    """
    A migration script was found but could not be read.

    Attributes:
        locator: Script name
        line: Line being read when the failure happened
    """
    def __init__(self, locator: str, line: int):
        super().__init__(f"{locator}: failed to read script at line {line}")
        self.locator = locator
        self.line = line


class TransactionError(MigrationError):
    """Committing the migration transaction failed."""
    pass


class MigrationStepError(MigrationError):
    """
    A programmatic migration raised while migrating.

    Attributes:
        version: Database version the step was migrating from
        locator: Class locator of the failed migration
    """
    def __init__(self, version: int, locator: str):
        super().__init__(f"Migration {locator} failed migrating from version {version}")
        self.version = version
        self.locator = locator
