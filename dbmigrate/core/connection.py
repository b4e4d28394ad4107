"""
Connection context for a migration run.

A run owns exactly one SQLAlchemy connection. It is opened lazily, kept in a
transaction for the whole run and closed once the run is over. The engine is
either built from a URL (plus optional driver and credentials) or supplied
by the caller as a pre-configured connection factory.
"""

import logging
from typing import Dict, Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine, URL, make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError, SQLAlchemyError

from ..exceptions import ConnectionError

logger = logging.getLogger(__name__)


def build_url(url: str, driver: Optional[str] = None, user: Optional[str] = None,
              password: Optional[str] = None) -> URL:
    """
    Build a SQLAlchemy URL from the configured pieces.

    Args:
        url: Database URL (e.g. 'postgresql://host/db')
        driver: DBAPI driver name combined into the URL (e.g. 'psycopg2')
        user: User name, overrides the one in the URL
        password: Password, overrides the one in the URL

    Returns:
        SQLAlchemy URL
    """
    try:
        result = make_url(url)
    except ArgumentError as e:
        raise ConnectionError(f"Invalid database URL: {url}") from e

    if driver:
        result = result.set(drivername=f"{result.get_backend_name()}+{driver}")
    if user is not None:
        result = result.set(username=user)
    if password is not None:
        result = result.set(password=password)

    return result


class ConnectionContext:
    """
    The single live database connection of a migration run.

    Auto-commit is never used: once disable_autocommit() has been called a
    transaction is always open, and it is only ended by commit(), rollback()
    or reset_transaction().
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None,
                 driver: Optional[str] = None, user: Optional[str] = None,
                 password: Optional[str] = None,
                 engine_args: Optional[Dict[str, Any]] = None):
        """
        Initialize the connection context.

        Args:
            url: Database URL, required unless engine is given
            engine: Pre-built engine used as the connection factory
            driver: DBAPI driver name combined into the URL
            user: Database user
            password: Database password
            engine_args: Extra keyword arguments for create_engine
        """
        if engine is None and not url:
            raise ConnectionError("Either a database URL or an engine is required")

        self._engine = engine
        self._owns_engine = engine is None
        self._url = build_url(url, driver, user, password) if engine is None else engine.url
        self._engine_args = engine_args or {}
        self._connection: Optional[Connection] = None

    @property
    def display_url(self) -> str:
        """Database URL with the password masked."""
        return self._url.render_as_string(hide_password=True)

    @property
    def engine(self) -> Engine:
        """The SQLAlchemy engine, created on first use."""
        if self._engine is None:
            try:
                self._engine = create_engine(self._url, **self._engine_args)
            except (ArgumentError, NoSuchModuleError) as e:
                raise ConnectionError(f"Could not find database driver for: {self.display_url}") from e
            except SQLAlchemyError as e:
                raise ConnectionError(f"Could not create engine: {self.display_url}") from e
            logger.debug(f"Created engine for {self.display_url}")
        return self._engine

    def connect(self) -> Connection:
        """
        Get the run connection, opening it if needed.

        Returns:
            Open SQLAlchemy connection
        """
        if self._connection is None or self._connection.closed:
            engine = self.engine
            if not self._owns_engine:
                logger.info(f"Using supplied engine: {self.display_url}")
            try:
                self._connection = engine.connect()
            except SQLAlchemyError as e:
                raise ConnectionError(f"Could not connect to database: {self.display_url}") from e
        return self._connection

    @property
    def connection(self) -> Connection:
        """The open run connection."""
        return self.connect()

    @property
    def is_open(self) -> bool:
        """Whether the run connection is open, without opening it."""
        return self._connection is not None and not self._connection.closed

    @property
    def database_name(self) -> str:
        """Lowercased database product name of the live connection."""
        return self.connect().dialect.name.lower()

    def disable_autocommit(self) -> None:
        """Make sure a transaction is open on the run connection."""
        connection = self.connect()
        try:
            if not connection.in_transaction():
                connection.begin()
        except SQLAlchemyError as e:
            raise ConnectionError("Failed to set autocommit to false") from e

    def reset_transaction(self) -> None:
        """
        Discard the current transaction and open a fresh one.

        Used after a failed statement left the transaction unusable.
        """
        connection = self.connect()
        try:
            if connection.in_transaction():
                connection.rollback()
            connection.begin()
        except SQLAlchemyError as e:
            raise ConnectionError("Could not reset transaction state") from e

    def commit(self) -> None:
        """Commit the run transaction."""
        if self.is_open:
            self._connection.commit()

    def rollback(self) -> None:
        """Roll back the run transaction."""
        if self.is_open:
            self._connection.rollback()

    def close(self) -> None:
        """Close the run connection and dispose of an engine created here."""
        try:
            if self._connection is not None:
                self._connection.close()
        finally:
            self._connection = None
            if self._owns_engine and self._engine is not None:
                self._engine.dispose()
                self._engine = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
