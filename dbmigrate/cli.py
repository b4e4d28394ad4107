"""
Command line interface for dbmigrate.

Usage:
    dbmigrate -c migrate.yaml migrate              # Migrate to migration.version
    dbmigrate -c migrate.yaml migrate --auto       # Apply every available migration
    dbmigrate -c migrate.yaml status               # Show the database version
    dbmigrate -c migrate.yaml create --dir db/migrations [--database postgresql]
"""

import argparse
import sys
from typing import List, Optional

import yaml
from jsonschema import ValidationError
from rich.console import Console
from rich.table import Table

from .config_manager import ConfigManager
from .exceptions import MigrationError
from .logging_utils import setup_cli_logging
from .migrations import MigrationEngine, create_migration_script

console = Console()


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog='dbmigrate',
        description='Migrate a database to the version the client code expects'
    )
    parser.add_argument('-c', '--config', required=True, help='Configuration YAML file')
    parser.add_argument('-o', '--override', help='Override configuration YAML file')

    subparsers = parser.add_subparsers(dest='command', required=True)

    migrate_parser = subparsers.add_parser('migrate', help='Migrate the database')
    mode = migrate_parser.add_mutually_exclusive_group()
    mode.add_argument('--version', type=int, help='Client version to migrate to')
    mode.add_argument('--auto', action='store_true',
                      help='Automatically update the database to the latest possible')

    subparsers.add_parser('status', help='Show the database version')

    create_parser = subparsers.add_parser('create', help='Create the next migration script')
    create_parser.add_argument('--dir', required=True, help='Directory of the migration scripts')
    create_parser.add_argument('--database', help='Create a database-specific script')

    return parser


def _load(args: argparse.Namespace) -> dict:
    manager = ConfigManager(args.config)
    if args.override:
        manager.merge_override(args.override)

    if getattr(args, 'auto', False):
        manager.set('migration.auto', True)
    if getattr(args, 'version', None) is not None:
        manager.set('migration.version', args.version)
        manager.set('migration.auto', False)

    manager.validate()
    return manager.get_config(redact_secrets=False)


def cmd_migrate(engine: MigrationEngine) -> None:
    """Run the migration."""
    if engine.migrate():
        console.print(f"[green]Database migrated to version {engine.current_version()}[/green]")
    else:
        console.print("Database is up to date")


def cmd_status(engine: MigrationEngine) -> None:
    """Print the database version."""
    table = Table(title="Migration status")
    table.add_column("Setting", no_wrap=True)
    table.add_column("Value")

    table.add_row("Database", engine.context.display_url)
    table.add_row("Version table", engine.table_name)
    table.add_row("Database version", str(engine.current_version()))
    if engine.auto:
        table.add_row("Mode", "auto")
    else:
        table.add_row("Client version", str(engine.version))
        table.add_row("Needs migration", "yes" if engine.needs_migrate() else "no")

    console.print(table)


def cmd_create(engine: MigrationEngine, directory: str, database: Optional[str]) -> None:
    """Bring the database up to date, then scaffold the next script."""
    engine.migrate()
    path = create_migration_script(directory, engine.current_version(), database)
    console.print(f"Created new migration: {path}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Command line entry point.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    try:
        config = _load(args)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as e:
        message = e.message if isinstance(e, ValidationError) else str(e)
        console.print(f"[red]Invalid configuration: {message}[/red]")
        return 1

    setup_cli_logging(config)

    try:
        engine = MigrationEngine.from_config(config)
        if args.command == 'migrate':
            cmd_migrate(engine)
        elif args.command == 'status':
            cmd_status(engine)
        elif args.command == 'create':
            cmd_create(engine, args.dir, args.database)
    except MigrationError as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        return 1
    except FileExistsError as e:
        console.print(f"[red]Migration script already exists: {e.filename}[/red]")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
