"""
Core database components.

This module contains the building blocks the migration engine drives:
- The run connection context
- Version table bookkeeping
- Advisory locking
"""

from .connection import ConnectionContext, build_url
from .locking import LockCoordinator, LockStatementRegistry
from .version_store import VersionStore

__all__ = [
    "ConnectionContext",
    "build_url",
    "LockCoordinator",
    "LockStatementRegistry",
    "VersionStore",
]
