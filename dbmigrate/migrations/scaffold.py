"""
Creation of new migration scripts.
"""

import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


def create_migration_script(directory: Union[str, Path], version: int,
                            database: Optional[str] = None) -> Path:
    """
    Create the next migration script in the series.

    Args:
        directory: Migration directory (the namespace directory)
        version: Current database version the script migrates from
        database: Database product name for a database-specific script

    Returns:
        Path to the created script

    Raises:
        FileExistsError: If the script already exists
    """
    target_dir = Path(directory)
    if database:
        target_dir = target_dir / database.lower()
    target_dir.mkdir(parents=True, exist_ok=True)

    script_path = target_dir / f"migratefrom{version}.sql"
    with open(script_path, 'x', encoding='utf-8') as f:
        f.write(f"# Migration from version {version}\n")

    logger.info(f"Created new migration: {script_path}")
    return script_path
