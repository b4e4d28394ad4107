"""
Migration resolution.

For every version transition the resolver walks eight candidates in a fixed
order (class before script, database-specific before generic, From before
To) and returns the first one that exists. Programmatic migrations come from
an explicit MigrationRegistry instead of being loaded by class name.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Connection

from ..exceptions import ConfigurationError, MigrationError
from .script_runner import ScriptRunner

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    """Which version a migration is keyed by."""
    FROM = 'from'   # keyed by the version migrated from
    TO = 'to'       # keyed by the version migrated to


class ActionKind(str, Enum):
    """How a migration step is implemented."""
    CLASS = 'class'
    SCRIPT = 'script'


class Migrator(ABC):
    """
    Base class for programmatic migrations.

    migrate() runs inside the engine's transaction and signals failure by
    raising. It may update the version table itself, in which case the
    engine keeps the version it wrote.
    """

    @abstractmethod
    def migrate(self, connection: Connection) -> None:
        """
        Apply the migration.

        Args:
            connection: Run connection
        """
        raise NotImplementedError


class MigrationRegistry:
    """
    Explicit registry of programmatic migrations.

    Entries are keyed by (version, direction, database); database None is
    the generic entry used by every database.
    """

    def __init__(self):
        self._migrations: Dict[Tuple[int, Direction, Optional[str]], Any] = {}

    def add(self, version: int, migrator: Any, direction: Direction = Direction.FROM,
            database: Optional[str] = None) -> None:
        """
        Register a migration.

        Args:
            version: Version the migration is keyed by
            migrator: Migrator subclass (instantiated on use) or instance
            direction: Direction.FROM or Direction.TO
            database: Database product name, None for all databases
        """
        if not callable(getattr(migrator, 'migrate', None)):
            raise TypeError(f"{migrator!r} does not provide migrate(connection)")

        key = (int(version), Direction(direction), self._normalize(database))
        if key in self._migrations:
            raise ValueError(f"Migration already registered for {key}")
        self._migrations[key] = migrator

    def register(self, version: int, direction: Direction = Direction.FROM,
                 database: Optional[str] = None) -> Callable:
        """
        Decorator form of add().

        Usage:
            @registry.register(3)
            class AddUsersTable(Migrator):
                ...
        """
        def decorator(migrator):
            self.add(version, migrator, direction, database)
            return migrator
        return decorator

    def lookup(self, version: int, direction: Direction,
               database: Optional[str] = None) -> Optional[Any]:
        """Get a registered migration, None if there is none."""
        return self._migrations.get((version, Direction(direction), self._normalize(database)))

    def __len__(self) -> int:
        return len(self._migrations)

    @staticmethod
    def _normalize(database: Optional[str]) -> Optional[str]:
        return database.lower().replace('-', '') if database else None


def load_registry(reference: str) -> MigrationRegistry:
    """
    Import a registry named as 'package.module:attribute'.

    Args:
        reference: Module path and attribute name separated by ':'

    Returns:
        The MigrationRegistry found there

    Raises:
        ConfigurationError: If the module cannot be imported or the
            attribute is not a MigrationRegistry
    """
    module_name, _, attribute = reference.partition(':')
    if not module_name or not attribute:
        raise ConfigurationError(f"Registry must be given as 'module:attribute', got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise ConfigurationError(f"Could not import migration registry module {module_name}") from e

    registry = getattr(module, attribute, None)
    if not isinstance(registry, MigrationRegistry):
        raise ConfigurationError(f"{reference} is not a MigrationRegistry")

    logger.info(f"Using migration registry {reference} ({len(registry)} migrations)")
    return registry


@dataclass(frozen=True)
class ActionCandidate:
    """One entry of the resolution order."""
    locator: str
    kind: ActionKind
    direction: Direction
    version: int
    database: Optional[str] = None


@dataclass
class ResolvedAction:
    """A candidate that exists, ready to be applied."""
    candidate: ActionCandidate
    migrator: Optional[Migrator] = None

    @property
    def locator(self) -> str:
        return self.candidate.locator

    @property
    def kind(self) -> ActionKind:
        return self.candidate.kind


class ActionResolver:
    """Finds the migration to apply for a database version."""

    def __init__(self, namespace: str, registry: Optional[MigrationRegistry] = None,
                 script_runner: Optional[ScriptRunner] = None):
        """
        Initialize the resolver.

        Args:
            namespace: Package (dotted) or directory holding the migrations
            registry: Registry of programmatic migrations
            script_runner: Runner used to check for scripts
        """
        if not namespace:
            raise ValueError("A migration namespace is required")

        self.namespace = namespace
        self.registry = registry if registry is not None else MigrationRegistry()
        self.script_runner = script_runner if script_runner is not None else ScriptRunner()

    def candidates(self, database: str, version: int) -> List[ActionCandidate]:
        """
        Get the ordered candidates for migrating from a version.

        Args:
            database: Lowercased database product name
            version: Current database version

        Returns:
            Eight candidates in resolution order
        """
        result = []
        for direction, keyed_version in ((Direction.FROM, version), (Direction.TO, version + 1)):
            for specific in (database, None):
                result.append(ActionCandidate(
                    self._class_locator(direction, keyed_version, specific),
                    ActionKind.CLASS, direction, keyed_version, specific
                ))
                result.append(ActionCandidate(
                    self._script_locator(direction, keyed_version, specific),
                    ActionKind.SCRIPT, direction, keyed_version, specific
                ))
        return result

    def resolve(self, database: str, version: int) -> Optional[ResolvedAction]:
        """
        Find the first existing migration for a version.

        Args:
            database: Lowercased database product name
            version: Current database version

        Returns:
            ResolvedAction, or None if no candidate exists
        """
        for candidate in self.candidates(database, version):
            if candidate.kind is ActionKind.CLASS:
                migrator = self.registry.lookup(candidate.version, candidate.direction, candidate.database)
                if migrator is not None:
                    logger.info(f"Using class: {candidate.locator}")
                    return ResolvedAction(candidate, self._instantiate(migrator, candidate.locator))
            elif self.script_runner.exists(candidate.locator):
                return ResolvedAction(candidate)

        logger.debug(f"No migration found for version {version} on {database}")
        return None

    def _class_locator(self, direction: Direction, version: int, database: Optional[str]) -> str:
        prefix = 'MigrateFrom' if direction is Direction.FROM else 'MigrateTo'
        parts = [self.namespace]
        if database:
            parts.append(database)
        parts.append(f"{prefix}{version}")
        return '.'.join(parts).replace('-', '')

    def _script_locator(self, direction: Direction, version: int, database: Optional[str]) -> str:
        prefix = 'migratefrom' if direction is Direction.FROM else 'migrateto'
        parts = [self.namespace.replace('.', '/')]
        if database:
            parts.append(database)
        parts.append(f"{prefix}{version}.sql")
        return '/'.join(parts)

    @staticmethod
    def _instantiate(migrator: Any, locator: str) -> Migrator:
        if not isinstance(migrator, type):
            return migrator
        try:
            return migrator()
        except Exception as e:
            raise MigrationError(f"Failure constructing migrator: {locator}") from e
