"""Tests for the migration engine run."""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from dbmigrate.core.locking import LockStatementRegistry
from dbmigrate.exceptions import (
    ConfigurationError,
    ConnectionError,
    LockError,
    MigrationStepError,
    ResolutionExhausted,
    StatementExecutionError,
    TransactionError,
    VersionConsistencyError,
)
from dbmigrate.logging_utils import get_run_context
from dbmigrate.migrations.engine import MigrationEngine
from dbmigrate.migrations.resolver import Direction, MigrationRegistry, Migrator
from dbmigrate.migrations.script_runner import ScriptRunner


@pytest.fixture
def scripts(tmp_path, write_script):
    """Write scripts into the 'appdb' namespace directory."""
    def _write(name, content):
        return write_script(tmp_path, f"appdb/{name}", content)
    return _write


@pytest.fixture
def make_engine(tmp_path, db_url):
    """Build an engine on the test database using the 'appdb' namespace."""
    def _make(**kwargs):
        kwargs.setdefault('script_runner', ScriptRunner(tmp_path))
        if 'engine' not in kwargs:
            kwargs.setdefault('url', db_url)
        return MigrationEngine('appdb', **kwargs)
    return _make


@pytest.fixture
def at_version(run_sql):
    """Create the version table holding the given version."""
    def _at(version, *statements):
        run_sql("CREATE TABLE db_version (version INTEGER)",
                f"INSERT INTO db_version VALUES ({version})", *statements)
    return _at


class TestMigrate:
    """Test migrating with scripts."""

    def test_migrates_fresh_database(self, make_engine, scripts, fetch_all):
        """A fresh database is created and brought to the client version."""
        scripts('migratefrom0.sql', "CREATE TABLE db_version (version INTEGER);\n")
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\nINSERT INTO t VALUES (1);\n")
        scripts('migrateto3.sql', "# second step\nINSERT INTO t VALUES (2);\n")

        engine = make_engine(version=3)

        assert engine.migrate() is True
        assert engine.current_version() == 3
        assert fetch_all("SELECT a FROM t ORDER BY a") == [(1,), (2,)]
        assert fetch_all("SELECT version FROM db_version") == [(3,)]

    def test_up_to_date_database_is_untouched(self, make_engine, scripts, at_version, fetch_all):
        """Migrating an up to date database applies nothing."""
        at_version(2)
        scripts('migratefrom2.sql', "CREATE TABLE t (a INT);\n")

        assert make_engine(version=2).migrate() is False
        assert fetch_all("SELECT version FROM db_version") == [(2,)]
        assert fetch_all("SELECT name FROM sqlite_master WHERE name = 't'") == []

    def test_second_run_is_noop(self, make_engine, scripts, at_version):
        """Running twice migrates once."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")

        assert make_engine(version=2).migrate() is True
        assert make_engine(version=2).migrate() is False

    def test_client_older_than_database(self, make_engine, scripts, at_version, fetch_all):
        """A database ahead of the client is refused."""
        at_version(5)
        scripts('migratefrom5.sql', "CREATE TABLE t (a INT);\n")

        with pytest.raises(VersionConsistencyError) as exc_info:
            make_engine(version=3).migrate()

        assert exc_info.value.database_version == 5
        assert exc_info.value.client_version == 3
        assert fetch_all("SELECT version FROM db_version") == [(5,)]

    def test_database_specific_script_preferred(self, make_engine, scripts, at_version, fetch_all):
        """The script for the live database wins over the generic one."""
        at_version(1, "CREATE TABLE t (a TEXT)")
        scripts('sqlite/migratefrom1.sql', "INSERT INTO t VALUES ('sqlite');\n")
        scripts('migratefrom1.sql', "INSERT INTO t VALUES ('generic');\n")

        make_engine(version=2).migrate()

        assert fetch_all("SELECT a FROM t") == [('sqlite',)]


class TestModes:
    """Test automatic and manual mode exhaustion."""

    def test_auto_mode_stops_when_nothing_found(self, make_engine, scripts):
        """Automatic mode applies what exists and stops without error."""
        scripts('migratefrom0.sql', "CREATE TABLE db_version (version INTEGER);\n")
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")

        engine = make_engine(auto=True)

        assert engine.migrate() is True
        assert engine.current_version() == 2
        assert engine.migrate() is False

    def test_manual_mode_requires_every_step(self, make_engine, scripts):
        """Manual mode fails naming the version without migration."""
        scripts('migratefrom0.sql', "CREATE TABLE db_version (version INTEGER);\n")
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")

        with pytest.raises(ResolutionExhausted) as exc_info:
            make_engine(version=5).migrate()

        assert exc_info.value.version == 2

    def test_version_or_auto_required(self, make_engine):
        """Either a client version or automatic mode must be set."""
        engine = make_engine()

        with pytest.raises(ConfigurationError):
            engine.migrate()
        with pytest.raises(ConfigurationError):
            engine.needs_migrate()


class TestProgrammaticMigrations:
    """Test registered migration classes."""

    def test_class_runs_before_generic_script(self, make_engine, scripts, at_version, fetch_all):
        """A registered class wins over the script for the same step."""
        at_version(1, "CREATE TABLE t (a TEXT)")
        scripts('migratefrom1.sql', "INSERT INTO t VALUES ('script');\n")
        registry = MigrationRegistry()

        @registry.register(1)
        class AddRow(Migrator):
            def migrate(self, connection):
                connection.execute(text("INSERT INTO t VALUES ('class')"))

        assert make_engine(version=2, registry=registry).migrate() is True
        assert fetch_all("SELECT a FROM t") == [('class',)]
        assert fetch_all("SELECT version FROM db_version") == [(2,)]

    def test_class_may_set_version_itself(self, make_engine, at_version, fetch_all):
        """A version written by the migration is kept."""
        at_version(1)
        registry = MigrationRegistry()

        @registry.register(2, Direction.TO)
        class JumpAhead(Migrator):
            def migrate(self, connection):
                connection.execute(text("UPDATE db_version SET version = 4"))

        assert make_engine(version=4, registry=registry).migrate() is True
        assert fetch_all("SELECT version FROM db_version") == [(4,)]

    def test_class_failure_is_wrapped(self, make_engine, at_version):
        """Errors raised by a migration carry the locator and version."""
        at_version(1)
        registry = MigrationRegistry()

        @registry.register(1)
        class Broken(Migrator):
            def migrate(self, connection):
                raise ValueError("bad data")

        with pytest.raises(MigrationStepError) as exc_info:
            make_engine(version=2, registry=registry).migrate()

        assert exc_info.value.version == 1
        assert exc_info.value.locator == 'appdb.MigrateFrom1'
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_run_context_is_set(self, make_engine, at_version):
        """Log records of a run share a run identifier."""
        at_version(1)
        seen = []
        registry = MigrationRegistry()

        @registry.register(1)
        class Capture(Migrator):
            def migrate(self, connection):
                seen.append(get_run_context())

        make_engine(version=2, registry=registry).migrate()

        assert seen[0] is not None
        assert get_run_context() is None


class TestFailurePolicy:
    """Test what happens to earlier steps when a step fails."""

    @pytest.fixture
    def failing_second_step(self, scripts, at_version):
        at_version(1, "CREATE TABLE t (a INT)")
        scripts('migratefrom1.sql', "INSERT INTO t VALUES (1);\n")
        scripts('migratefrom2.sql', "INSERT INTO t VALUES (2);\nINSERT INTO missing VALUES (1);\n")

    def test_failure_rolls_back_run(self, make_engine, failing_second_step, fetch_all):
        """By default a failed run leaves the database unchanged."""
        with pytest.raises(StatementExecutionError) as exc_info:
            make_engine(version=3).migrate()

        assert exc_info.value.line == 2
        assert exc_info.value.statement == "INSERT INTO missing VALUES (1)"
        assert exc_info.value.locator == 'appdb/migratefrom2.sql'
        assert fetch_all("SELECT version FROM db_version") == [(1,)]
        assert fetch_all("SELECT a FROM t") == []

    def test_commit_on_failure_keeps_progress(self, make_engine, failing_second_step, fetch_all):
        """With commit_on_failure the work done before the failure is kept."""
        with pytest.raises(StatementExecutionError):
            make_engine(version=3, commit_on_failure=True).migrate()

        assert fetch_all("SELECT version FROM db_version") == [(2,)]
        assert fetch_all("SELECT a FROM t ORDER BY a") == [(1,), (2,)]


class TestLocking:
    """Test the advisory lock around the run."""

    @pytest.fixture
    def sqlite_locks(self):
        return LockStatementRegistry({
            'lock_sqlite': "UPDATE :table SET version = version",
            'unlock_sqlite': "SELECT COUNT(*) FROM :table",
        })

    def test_lock_wraps_step_loop(self, make_engine, sqlite_engine, executed, scripts,
                                  at_version, sqlite_locks):
        """The lock is taken before the first step and released after the last."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")

        make_engine(version=2, engine=sqlite_engine, lock_statements=sqlite_locks).migrate()

        lock = executed.index("UPDATE db_version SET version = version")
        step = executed.index("CREATE TABLE t (a INT)")
        unlock = executed.index("SELECT COUNT(*) FROM db_version")
        assert lock < step < unlock

    def test_fresh_database_is_not_locked(self, make_engine, sqlite_engine, executed, scripts,
                                          sqlite_locks):
        """Version 0 has no version table to lock."""
        scripts('migratefrom0.sql', "CREATE TABLE db_version (version INTEGER);\n")

        make_engine(version=1, engine=sqlite_engine, lock_statements=sqlite_locks).migrate()

        assert "UPDATE db_version SET version = version" not in executed

    def test_unlock_failure_after_success(self, make_engine, scripts, at_version, fetch_all):
        """A failed unlock is reported, the migration is still committed."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")
        locks = LockStatementRegistry({
            'lock_sqlite': "SELECT 1",
            'unlock_sqlite': "SELECT * FROM no_such_table",
        })

        with pytest.raises(LockError):
            make_engine(version=2, lock_statements=locks).migrate()

        assert fetch_all("SELECT version FROM db_version") == [(2,)]

    def test_unlock_failure_does_not_mask_step_failure(self, make_engine, scripts, at_version):
        """The original error wins over cleanup failures."""
        at_version(1)
        scripts('migratefrom1.sql', "INSERT INTO missing VALUES (1);\n")
        locks = LockStatementRegistry({
            'lock_sqlite': "SELECT 1",
            'unlock_sqlite': "SELECT * FROM no_such_table",
        })

        with pytest.raises(StatementExecutionError):
            make_engine(version=2, lock_statements=locks).migrate()

    def test_lock_failure_aborts(self, make_engine, scripts, at_version, fetch_all):
        """A failing lock statement stops the run before any step."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")
        locks = LockStatementRegistry({'lock_sqlite': "SELECT * FROM no_such_table"})

        with pytest.raises(LockError):
            make_engine(version=2, lock_statements=locks).migrate()

        assert fetch_all("SELECT version FROM db_version") == [(1,)]


class TestCleanup:
    """Test commit and close failures."""

    def test_commit_failure_raises(self, make_engine, scripts, at_version, monkeypatch):
        """A failed commit of a successful run is an error."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")
        engine = make_engine(version=2)

        def fail_commit():
            raise OperationalError("COMMIT", {}, Exception("disk full"))

        monkeypatch.setattr(engine.context, 'commit', fail_commit)

        with pytest.raises(TransactionError):
            engine.migrate()

    def test_close_failure_is_only_logged(self, make_engine, scripts, at_version, monkeypatch, caplog):
        """A connection that cannot be closed does not fail the run."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")
        engine = make_engine(version=2)

        def fail_close():
            raise OperationalError("close", {}, Exception("gone"))

        monkeypatch.setattr(engine.context, 'close', fail_close)

        assert engine.migrate() is True
        assert "leaking" in caplog.text

    @pytest.fixture
    def drop_connection_after_loop(self, monkeypatch):
        """Close the run connection once the step loop is done and refuse to reopen it."""
        def _install(engine):
            needs_migrate = engine._needs_migrate

            def refuse():
                raise ConnectionError("database went away")

            def check(db_version):
                result = needs_migrate(db_version)
                if not result:
                    engine.context.connection.close()
                    monkeypatch.setattr(engine.context, 'connect', refuse)
                return result

            monkeypatch.setattr(engine, '_needs_migrate', check)
        return _install

    def test_lost_connection_is_not_reopened_for_unlock(self, make_engine, scripts, at_version,
                                                        fetch_all, drop_connection_after_loop):
        """Unlock reports a lost connection instead of opening a new one."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")
        locks = LockStatementRegistry({'lock_sqlite': "SELECT 1", 'unlock_sqlite': "SELECT 2"})
        engine = make_engine(version=2, lock_statements=locks)
        drop_connection_after_loop(engine)

        with pytest.raises(LockError) as exc_info:
            engine.migrate()

        assert exc_info.value.database == 'sqlite'
        assert not engine.context.is_open
        assert fetch_all("SELECT version FROM db_version") == [(1,)]

    def test_lost_connection_before_commit(self, make_engine, scripts, at_version,
                                           drop_connection_after_loop):
        """A run whose connection is gone before commit does not report success."""
        at_version(1)
        scripts('migratefrom1.sql', "CREATE TABLE t (a INT);\n")
        engine = make_engine(version=2)
        drop_connection_after_loop(engine)

        with pytest.raises(TransactionError):
            engine.migrate()


class TestConnection:
    """Test connection setup failures and helpers."""

    def test_unreachable_database(self, tmp_path):
        """A database that cannot be opened raises ConnectionError."""
        url = f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}"

        with pytest.raises(ConnectionError):
            MigrationEngine('appdb', url, auto=True).migrate()

    def test_unknown_driver(self):
        """A driver that is not installed raises ConnectionError."""
        engine = MigrationEngine('appdb', 'postgresql://localhost/app', driver='nosuchdriver', auto=True)

        with pytest.raises(ConnectionError):
            engine.migrate()

    def test_needs_migrate(self, make_engine, at_version):
        """needs_migrate compares database and client versions."""
        at_version(2)

        assert make_engine(version=3).needs_migrate() is True
        assert make_engine(version=2).needs_migrate() is False
        assert make_engine(auto=True).needs_migrate() is True

    def test_from_config(self, tmp_path, db_url, scripts, fetch_all):
        """An engine can be built from a configuration mapping."""
        scripts('migratefrom0.sql', "CREATE TABLE db_version (version INTEGER);\n")
        config = {
            'database': {'url': db_url},
            'migration': {'namespace': 'appdb', 'auto': True, 'script_dir': str(tmp_path)},
        }

        engine = MigrationEngine.from_config(config)

        assert engine.auto is True
        assert engine.table_name == 'db_version'
        assert engine.migrate() is True
        assert fetch_all("SELECT version FROM db_version") == [(1,)]

    def test_from_config_requires_namespace(self, db_url):
        """The migration namespace is mandatory."""
        with pytest.raises(ConfigurationError):
            MigrationEngine.from_config({'database': {'url': db_url}, 'migration': {}})
