"""Tests for version table bookkeeping."""

import pytest

from dbmigrate.core.connection import ConnectionContext
from dbmigrate.core.version_store import VersionStore
from dbmigrate.exceptions import (
    ConfigurationError,
    VersionAdvanceError,
    VersionConsistencyError,
)


@pytest.fixture
def context(sqlite_engine):
    """Connection context on the test database with a transaction open."""
    ctx = ConnectionContext(engine=sqlite_engine)
    ctx.disable_autocommit()
    yield ctx
    ctx.close()


class TestGetVersion:
    """Test reading the database version."""

    def test_missing_table_is_version_zero(self, context):
        """A database without version table is at version 0."""
        store = VersionStore(context)
        assert store.get_version() == 0

        # The connection is still usable after the failed query
        assert context.connection.exec_driver_sql("SELECT 1").scalar() == 1
        assert context.connection.in_transaction()

    def test_empty_table_bootstraps_version_one(self, context, run_sql, fetch_all):
        """An empty version table is initialized with version 1."""
        run_sql("CREATE TABLE db_version (version INTEGER)")
        store = VersionStore(context)

        assert store.get_version() == 1
        context.commit()

        assert fetch_all("SELECT version FROM db_version") == [(1,)]

    def test_bootstrap_is_not_repeated(self, context, run_sql, fetch_all):
        """Reading twice leaves exactly one row behind."""
        run_sql("CREATE TABLE db_version (version INTEGER)")
        store = VersionStore(context)

        assert store.get_version() == 1
        assert store.get_version() == 1
        context.commit()

        assert fetch_all("SELECT COUNT(*) FROM db_version") == [(1,)]

    def test_single_row(self, context, run_sql):
        """The stored version is returned as is."""
        run_sql("CREATE TABLE db_version (version INTEGER)", "INSERT INTO db_version VALUES (7)")
        assert VersionStore(context).get_version() == 7

    def test_multiple_rows_are_inconsistent(self, context, run_sql):
        """More than one row fails on every read."""
        run_sql(
            "CREATE TABLE db_version (version INTEGER)",
            "INSERT INTO db_version VALUES (1)",
            "INSERT INTO db_version VALUES (2)",
        )
        store = VersionStore(context)

        for _ in range(2):
            with pytest.raises(VersionConsistencyError):
                store.get_version()

    def test_null_version_is_inconsistent(self, context, run_sql):
        """A row without a version cannot be trusted."""
        run_sql("CREATE TABLE db_version (version INTEGER)", "INSERT INTO db_version VALUES (NULL)")
        with pytest.raises(VersionConsistencyError):
            VersionStore(context).get_version()

    def test_custom_table_name(self, context, run_sql):
        """The version table name is configurable."""
        run_sql("CREATE TABLE schema_info (version INTEGER)", "INSERT INTO schema_info VALUES (4)")
        assert VersionStore(context, 'schema_info').get_version() == 4

    def test_invalid_table_name(self, context):
        """Table names are validated before they reach SQL."""
        with pytest.raises(ConfigurationError):
            VersionStore(context, 'db_version; DROP TABLE users')


class TestSetVersion:
    """Test advancing the database version."""

    def test_advances_version(self, context, run_sql, fetch_all):
        """An untouched version is incremented."""
        run_sql("CREATE TABLE db_version (version INTEGER)", "INSERT INTO db_version VALUES (3)")
        store = VersionStore(context)

        assert store.set_version(3, 4) == 4
        assert store.get_version() == 4
        context.commit()

        assert fetch_all("SELECT version FROM db_version") == [(4,)]

    def test_keeps_version_written_by_step(self, context, run_sql):
        """A version changed by the step itself is not overwritten."""
        run_sql("CREATE TABLE db_version (version INTEGER)", "INSERT INTO db_version VALUES (6)")
        store = VersionStore(context)

        assert store.set_version(3, 4) == 6
        assert store.get_version() == 6

    def test_missing_table_cannot_advance(self, context):
        """Without a version table there is no row to update."""
        with pytest.raises(VersionAdvanceError) as exc_info:
            VersionStore(context).set_version(0, 1)

        assert exc_info.value.from_version == 0
        assert exc_info.value.to_version == 1
