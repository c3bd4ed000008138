"""
Instance storage backends.
"""

from ..config.settings import StoreConfig
from .instances import (
    CommitResult,
    InMemoryInstanceStore,
    InstanceChanges,
    InstanceRecord,
    InstanceStore,
    LockToken,
)
from .sqlite import SQLiteInstanceStore


def create_instance_store(config: StoreConfig) -> InstanceStore:
    """Build the store backend selected in configuration."""
    if config.backend == "sqlite":
        return SQLiteInstanceStore(config.sqlite_path, message_retention=config.message_retention)
    return InMemoryInstanceStore(message_retention=config.message_retention)


__all__ = [
    "InstanceStore",
    "InstanceRecord",
    "InstanceChanges",
    "LockToken",
    "CommitResult",
    "InMemoryInstanceStore",
    "SQLiteInstanceStore",
    "create_instance_store",
]
