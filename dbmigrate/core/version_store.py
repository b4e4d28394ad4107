"""
Version bookkeeping in the single-row version table.
"""

import logging

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from ..config.db_config import validate_table_name
from ..exceptions import VersionAdvanceError, VersionConsistencyError
from .connection import ConnectionContext

logger = logging.getLogger(__name__)


class VersionStore:
    """
    Reads and advances the database version.

    The table holds zero or one row. An empty table is bootstrapped with
    version 1; a missing or unreadable table means version 0.
    """

    def __init__(self, context: ConnectionContext, table_name: str = 'db_version'):
        """
        Initialize the version store.

        Args:
            context: Connection context of the run
            table_name: Name of the version table
        """
        self.context = context
        self.table_name = validate_table_name(table_name)

    def get_version(self) -> int:
        """
        Get the current database version.

        Returns:
            Stored version, 1 for a freshly bootstrapped table, 0 when the
            table cannot be read

        Raises:
            VersionConsistencyError: If the table holds more than one row
        """
        connection = self.context.connect()
        try:
            rows = connection.execute(text(f"SELECT version FROM {self.table_name}")).fetchmany(2)
            if not rows:
                connection.execute(
                    text(f"INSERT INTO {self.table_name} (version) VALUES (:version)"),
                    {'version': 1}
                )
                logger.info(f"Initialized version table {self.table_name} at version 1")
                return 1
        except DBAPIError as e:
            # No usable version table yet, start from the migrate-from-0 step
            logger.debug(f"Version table {self.table_name} not readable, assuming version 0: {e}")
            self.context.reset_transaction()
            return 0

        if len(rows) > 1:
            raise VersionConsistencyError(f"Too many versions in table: {self.table_name}")
        if rows[0][0] is None:
            raise VersionConsistencyError(f"Table {self.table_name} is lacking a version")
        return int(rows[0][0])

    def set_version(self, current: int, target: int) -> int:
        """
        Advance the version after a step was applied.

        A step may have written the version itself; in that case the stored
        value is left alone.

        Args:
            current: Version the step migrated from
            target: Version to record

        Returns:
            Version stored after the call

        Raises:
            VersionAdvanceError: If the update did not affect exactly one row
        """
        stored = self.get_version()
        if stored != current:
            logger.info(f"Manually updated database from {current} to {stored}")
            return stored

        connection = self.context.connect()
        try:
            result = connection.execute(
                text(f"UPDATE {self.table_name} SET version = :version"),
                {'version': target}
            )
        except DBAPIError as e:
            raise VersionAdvanceError(current, target) from e

        if result.rowcount != 1:
            raise VersionAdvanceError(current, target, f"{result.rowcount} rows updated")

        logger.info(f"Automatically incremented database from {current} to {target}")
        return target
