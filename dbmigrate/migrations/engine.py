"""
Migration engine.

Brings the database from its stored version up to the client version (or as
far as migrations exist, in automatic mode) inside a single transaction
guarded by the advisory lock.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..config.db_config import get_migration_defaults
from ..config.logging_config import MigrationLoggerAdapter
from ..core.connection import ConnectionContext
from ..core.locking import LockCoordinator, LockStatementRegistry
from ..core.version_store import VersionStore
from ..exceptions import (
    ConfigurationError,
    LockError,
    MigrationError,
    MigrationStepError,
    ResolutionExhausted,
    TransactionError,
    VersionConsistencyError,
)
from ..logging_utils import clear_run_context, get_run_context, set_run_context
from .resolver import ActionKind, ActionResolver, MigrationRegistry, ResolvedAction, load_registry
from .script_runner import ScriptRunner


class MigrationEngine:
    """
    Migrates a database from its current version to the client version.

    Each version step is resolved in this order, stopping at the first that
    exists:

    1. <namespace>.<db>.MigrateFrom<V> registered class
    2. <namespace>/<db>/migratefrom<V>.sql script
    3. <namespace>.MigrateFrom<V> registered class
    4. <namespace>/migratefrom<V>.sql script
    5-8. the same four for MigrateTo<V+1> / migrateto<V+1>.sql
    """

    def __init__(self, namespace: str, url: Optional[str] = None, *,
                 engine: Optional[Engine] = None,
                 driver: Optional[str] = None,
                 user: Optional[str] = None,
                 password: Optional[str] = None,
                 version: Optional[int] = None,
                 auto: bool = False,
                 table_name: str = 'db_version',
                 registry: Optional[MigrationRegistry] = None,
                 lock_statements: Optional[LockStatementRegistry] = None,
                 script_runner: Optional[ScriptRunner] = None,
                 commit_on_failure: bool = False,
                 engine_args: Optional[Dict[str, Any]] = None):
        """
        Initialize the migration engine.

        Args:
            namespace: Package or directory holding migration scripts/classes
            url: Database URL (unless engine is given)
            engine: Pre-built SQLAlchemy engine used as connection factory
            driver: DBAPI driver name combined into the URL
            user: Database user
            password: Database password
            version: Client version to migrate to
            auto: Apply every resolvable migration instead of stopping at version
            table_name: Name of the version table
            registry: Programmatic migrations, replaces migration.registry
            lock_statements: Lock statement registry (bundled statements if None)
            script_runner: Script runner (cwd-relative files if None)
            commit_on_failure: Commit steps applied before a failure instead of
                rolling the whole run back
            engine_args: Extra keyword arguments for create_engine
        """
        self.namespace = namespace
        self.version = version
        self.auto = auto
        self.table_name = table_name
        self.commit_on_failure = commit_on_failure

        self.context = ConnectionContext(url, engine=engine, driver=driver, user=user,
                                         password=password, engine_args=engine_args)
        self.store = VersionStore(self.context, table_name)
        self.locks = LockCoordinator(lock_statements or LockStatementRegistry.load(), table_name)
        self.resolver = ActionResolver(namespace, registry, script_runner)
        self.logger = MigrationLoggerAdapter(logging.getLogger(__name__))

    @classmethod
    def from_config(cls, config: Mapping[str, Any], registry: Optional[MigrationRegistry] = None,
                    engine: Optional[Engine] = None) -> 'MigrationEngine':
        """
        Create an engine from a configuration dictionary.

        Args:
            config: Configuration with 'database' and 'migration' sections
                (see config_manager.CONFIG_SCHEMA)
            registry: Programmatic migrations, replaces migration.registry
            engine: Pre-built engine, replaces database.url

        Returns:
            MigrationEngine instance
        """
        database = config.get('database', {})
        migration = {**get_migration_defaults(), **config.get('migration', {})}

        if 'namespace' not in migration:
            raise ConfigurationError("Configuration must include 'migration.namespace'")

        if registry is None and migration['registry']:
            registry = load_registry(migration['registry'])

        return cls(
            migration['namespace'],
            database.get('url'),
            engine=engine,
            driver=database.get('driver'),
            user=database.get('user'),
            password=database.get('password'),
            version=migration.get('version'),
            auto=migration['auto'],
            table_name=migration['table'],
            registry=registry,
            lock_statements=LockStatementRegistry.load(config.get('locks')),
            script_runner=ScriptRunner(migration['script_dir']),
            commit_on_failure=migration['commit_on_failure'],
            engine_args=database.get('engine_args'),
        )

    def migrate(self) -> bool:
        """
        Migrate the database to the client version.

        Returns:
            True if at least one migration was applied

        Raises:
            MigrationError: If the migration is unsuccessful
        """
        self._check_settings()
        owns_run = get_run_context() is None
        if owns_run:
            set_run_context(uuid.uuid4().hex[:8])

        try:
            return self._run()
        finally:
            if owns_run:
                clear_run_context()

    def _run(self) -> bool:
        migrated = False
        locked = False
        database: Optional[str] = None
        failure: Optional[BaseException] = None

        try:
            connection = self.context.connect()
            # All DDL runs in one transaction so it can be rolled back on
            # databases with transactional DDL
            self.context.disable_autocommit()
            database = self.context.database_name
            self.logger.bind_database(database)

            # A fresh database has no version table to lock
            if self.store.get_version() > 0:
                locked = self.locks.lock(connection, database)

            while True:
                db_version = self.store.get_version()
                if not self._needs_migrate(db_version):
                    break

                action = self.resolver.resolve(database, db_version)
                if action is None:
                    if self.auto:
                        self.logger.info(f"No further migration found after version {db_version}")
                        break
                    raise ResolutionExhausted(db_version)

                self._apply(action, db_version)
                self.store.set_version(db_version, db_version + 1)
                migrated = True
        except BaseException as e:
            failure = e
            raise
        finally:
            self._finish(locked, failure, database)

        return migrated

    def _apply(self, action: ResolvedAction, db_version: int) -> None:
        """Execute a resolved migration inside the run transaction."""
        connection = self.context.connect()
        if action.kind is ActionKind.SCRIPT:
            self.resolver.script_runner.run(connection, action.locator)
            return

        try:
            action.migrator.migrate(connection)
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationStepError(db_version, action.locator) from e

    def _finish(self, locked: bool, failure: Optional[BaseException],
                database: Optional[str]) -> None:
        """
        Unlock, end the transaction and close the connection.

        Each step runs even if an earlier one failed and only uses the
        connection the run held; a lost connection is never reopened here.
        Failures are only logged when the run already failed; otherwise the
        first one is raised once the connection is closed.
        """
        secondary: Optional[MigrationError] = None

        if locked:
            try:
                if not self.context.is_open:
                    raise LockError("Run connection was closed before unlock", database)
                self.locks.unlock(self.context.connection, database)
            except MigrationError as e:
                if failure is None:
                    secondary = e
                else:
                    self.logger.error(f"Failed to unlock after failed migration: {e}")

        try:
            if not self.context.is_open:
                if failure is None and secondary is None:
                    secondary = TransactionError("Run connection was closed before commit")
            elif failure is None or self.commit_on_failure:
                self.context.commit()
            else:
                self.logger.warning("Rolling back migration transaction")
                self.context.rollback()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to end migration transaction: {e}", exc_info=True)
            if failure is None and secondary is None:
                secondary = TransactionError("Failed to commit migration transaction")
                secondary.__cause__ = e
        finally:
            try:
                self.context.close()
            except SQLAlchemyError as e:
                self.logger.warning(f"Couldn't close a database connection, we may be leaking them: {e}")

        if secondary is not None:
            raise secondary

    def needs_migrate(self) -> bool:
        """
        Check whether the database needs to be migrated.

        Only useful to interact with a user or fail early; call migrate()
        directly for automated migration.

        Returns:
            True if migrate() would apply migrations
        """
        self._check_settings()
        with self._session():
            return self._needs_migrate(self.store.get_version())

    def current_version(self) -> int:
        """
        Get the current database version.

        Returns:
            Current version (an empty version table is initialized to 1)
        """
        with self._session():
            return self.store.get_version()

    def _needs_migrate(self, db_version: int) -> bool:
        if self.auto:
            return True
        if db_version == self.version:
            return False
        if db_version > self.version:
            raise VersionConsistencyError(
                f"Client version older than database version: {self.version} < {db_version}",
                database_version=db_version,
                client_version=self.version
            )
        return True

    def _check_settings(self) -> None:
        if not self.auto and self.version is None:
            raise ConfigurationError("You must either set a client version or enable auto migration")

    @contextmanager
    def _session(self):
        """Short-lived connection session outside of migrate()."""
        self.context.connect()
        self.context.disable_autocommit()
        try:
            yield self.context.connection
        except BaseException:
            self.context.rollback()
            raise
        else:
            self.context.commit()
        finally:
            self.context.close()
