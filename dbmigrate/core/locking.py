"""
Advisory locking of the version table.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from ..config.db_config import load_lock_statements, validate_table_name
from ..exceptions import LockError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockStatementRegistry:
    """
    Immutable lock/unlock statement templates keyed by database product.

    Keys follow the lock_<db> / unlock_<db> convention; templates contain a
    :table placeholder for the version table name.
    """

    statements: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        normalized = {key.lower(): value for key, value in self.statements.items()}
        object.__setattr__(self, 'statements', MappingProxyType(normalized))

    @classmethod
    def load(cls, overrides: Optional[Mapping[str, str]] = None) -> 'LockStatementRegistry':
        """
        Build a registry from the bundled statements.

        Args:
            overrides: Extra or replacement entries

        Returns:
            LockStatementRegistry instance
        """
        return cls(load_lock_statements(dict(overrides or {})))

    def lock_statement(self, database: str, table_name: str) -> Optional[str]:
        """Get the lock statement for a database, None if it has none."""
        return self._render(f"lock_{database.lower()}", table_name)

    def unlock_statement(self, database: str, table_name: str) -> Optional[str]:
        """Get the unlock statement for a database, None if it has none."""
        return self._render(f"unlock_{database.lower()}", table_name)

    def _render(self, key: str, table_name: str) -> Optional[str]:
        template = self.statements.get(key)
        if not template:
            return None
        return template.replace(':table', table_name)


class LockCoordinator:
    """Acquires and releases the advisory lock around a migration run."""

    def __init__(self, registry: LockStatementRegistry, table_name: str = 'db_version'):
        """
        Initialize the lock coordinator.

        Args:
            registry: Lock statement registry
            table_name: Name of the version table substituted for :table
        """
        self.registry = registry
        self.table_name = validate_table_name(table_name)

    def lock(self, connection: Connection, database: str) -> bool:
        """
        Lock the version table.

        Args:
            connection: Run connection
            database: Lowercased database product name

        Returns:
            True if a lock statement was executed, False if the database
            has no registered lock statement

        Raises:
            LockError: If the lock statement failed
        """
        statement = self.registry.lock_statement(database, self.table_name)
        if statement is None:
            logger.warning(f"No lock statement registered for {database}, migrating without a lock")
            return False

        self._execute(connection, statement, database, "Could not lock database")
        logger.debug(f"Locked {self.table_name} on {database}")
        return True

    def unlock(self, connection: Connection, database: str) -> bool:
        """
        Release the version table lock.

        Returns:
            True if an unlock statement was executed

        Raises:
            LockError: If the unlock statement failed
        """
        statement = self.registry.unlock_statement(database, self.table_name)
        if statement is None:
            return False

        self._execute(connection, statement, database, "Could not unlock database")
        logger.debug(f"Unlocked {self.table_name} on {database}")
        return True

    def _execute(self, connection: Connection, statement: str, database: str, message: str) -> None:
        try:
            result = connection.exec_driver_sql(statement, execution_options={'no_parameters': True})
            result.close()
        except SQLAlchemyError as e:
            raise LockError(f"{message}: {statement}", database) from e
