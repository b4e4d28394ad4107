"""
SQL migration script runner.

Scripts are looked up as package resources first and as plain files second.
They are split on ';' with a simple non-greedy scan while they are being
read, so statements start executing before the whole file is consumed.
Quoted strings, inline comments and procedure bodies containing ';' are not
understood by the splitter.
"""

import io
import logging
import re
import time
from importlib import resources
from pathlib import Path
from typing import Iterable, Optional, Union

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from ..config.logging_config import log_statement
from ..exceptions import ScriptReadError, StatementExecutionError

logger = logging.getLogger(__name__)

STATEMENT_PATTERN = re.compile(r'.*?;', re.DOTALL)
COMMENT_PREFIXES = ('#', '--')


class ScriptRunner:
    """
    Locates and executes migration scripts.

    Locators are '/'-separated names such as 'myapp/migrations/migratefrom3.sql'.
    """

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the script runner.

        Args:
            base_dir: Directory plain-file locators are relative to
                (defaults to the current working directory)
        """
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def find(self, locator: str):
        """
        Find a script by locator.

        Args:
            locator: Script locator

        Returns:
            Traversable or Path of the script, None if it does not exist

        Raises:
            ScriptReadError: If the locator's package fails while importing
        """
        resource = self._find_resource(locator)
        if resource is not None:
            return resource

        path = (self.base_dir / locator) if self.base_dir is not None else Path(locator)
        if path.is_file():
            return path
        return None

    def exists(self, locator: str) -> bool:
        """Check whether a script exists."""
        return self.find(locator) is not None

    def run(self, connection: Connection, locator: str) -> None:
        """
        Execute a script that is known to exist.

        Args:
            connection: Run connection
            locator: Script locator

        Raises:
            FileNotFoundError: If the script does not exist
            StatementExecutionError: If a statement failed
            ScriptReadError: If the script could not be read
        """
        if not self.try_run(connection, locator):
            raise FileNotFoundError(f"Migration script not found: {locator}")

    def try_run(self, connection: Connection, locator: str) -> bool:
        """
        Execute a script if it exists.

        Returns:
            True if the script was found and executed, False if not found
        """
        script = self.find(locator)
        if script is None:
            return False

        logger.info(f"Using script: {locator}")
        try:
            stream = script.open('rb')
        except OSError as e:
            raise ScriptReadError(locator, 0) from e

        with io.TextIOWrapper(stream, encoding='utf-8') as reader:
            self.execute_lines(connection, reader, locator)
        return True

    def execute_lines(self, connection: Connection, lines: Iterable[str],
                      source: str = '<script>') -> int:
        """
        Split lines into statements and execute them in order.

        Args:
            connection: Run connection
            lines: Script lines
            source: Name used in errors and logs

        Returns:
            Number of statements executed
        """
        buffer = ''
        line_number = 0
        executed = 0
        iterator = iter(lines)

        while True:
            try:
                line = next(iterator)
            except StopIteration:
                break
            except (OSError, UnicodeDecodeError) as e:
                raise ScriptReadError(source, line_number + 1) from e

            line_number += 1
            line = line.rstrip('\r\n')
            if not line.startswith(COMMENT_PREFIXES):
                buffer += line
                if not line.endswith(';'):
                    buffer += ' '

            buffer, count = self._drain(connection, buffer, line_number, source)
            executed += count

        buffer, count = self._drain(connection, buffer, line_number, source)
        executed += count

        if buffer.strip():
            logger.debug(f"Ignoring unterminated text at end of {source}: {buffer.strip()}")

        logger.debug(f"Executed {executed} statements from {source}")
        return executed

    def _drain(self, connection: Connection, buffer: str, line_number: int,
               source: str) -> tuple:
        """Execute every complete statement in the buffer and return the rest."""
        consumed = 0
        executed = 0

        for match in STATEMENT_PATTERN.finditer(buffer):
            consumed = match.end()
            statement = match.group()[:-1].strip()
            if not statement:
                continue
            self._execute(connection, statement, line_number, source)
            executed += 1

        return buffer[consumed:], executed

    def _execute(self, connection: Connection, statement: str, line_number: int,
                 source: str) -> None:
        start_time = time.time()
        try:
            result = connection.exec_driver_sql(statement, execution_options={'no_parameters': True})
        except SQLAlchemyError as e:
            raise StatementExecutionError(line_number, statement, source) from e

        try:
            log_statement(logger, statement, line_number, time.time() - start_time)
        finally:
            result.close()

    @staticmethod
    def _find_resource(locator: str):
        """Look the locator up as a resource of its top-level package."""
        package, _, name = locator.partition('/')
        if not package or not name or not package.isidentifier():
            return None

        try:
            resource = resources.files(package)
        except (ImportError, TypeError) as e:
            logger.debug(f"{package} is not an importable package, looking for files: {e}")
            return None
        except Exception as e:
            raise ScriptReadError(locator, 0) from e

        for part in name.split('/'):
            resource = resource.joinpath(part)
        return resource if resource.is_file() else None
