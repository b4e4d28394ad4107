"""Shared fixtures for dbmigrate tests."""

import logging
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event


@pytest.fixture
def db_url(tmp_path):
    """URL of an empty file-backed SQLite database."""
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def sqlite_engine(db_url):
    """SQLAlchemy engine on the test database."""
    engine = create_engine(db_url)
    yield engine
    engine.dispose()


@pytest.fixture
def executed(sqlite_engine):
    """Statements sent to the test database, in order."""
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(sqlite_engine, 'before_cursor_execute', record)
    yield statements
    event.remove(sqlite_engine, 'before_cursor_execute', record)


@pytest.fixture(autouse=True)
def restore_dbmigrate_logger():
    """Undo handler changes made by the command line logging setup."""
    logger = logging.getLogger('dbmigrate')
    handlers = logger.handlers[:]
    level = logger.level
    propagate = logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def write_script():
    """Write a migration script below a base directory."""
    def _write(base: Path, locator: str, content) -> Path:
        path = base / locator
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding='utf-8')
        return path
    return _write


@pytest.fixture
def run_sql(sqlite_engine):
    """Execute setup statements on the test database and commit them."""
    def _run(*statements):
        with sqlite_engine.begin() as conn:
            for statement in statements:
                conn.exec_driver_sql(statement)
    return _run


@pytest.fixture
def fetch_all(sqlite_engine):
    """Fetch all rows of a query on the test database as tuples."""
    def _fetch(query):
        with sqlite_engine.connect() as conn:
            return [tuple(row) for row in conn.exec_driver_sql(query)]
    return _fetch
