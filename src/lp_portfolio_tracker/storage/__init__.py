"""Local persistence for offline recovery."""

from lp_portfolio_tracker.storage.backup import (
    BACKUP_PREFIX,
    MAX_BACKUP_AGE,
    BackupStore,
    JsonFileBackupStore,
    backup_key,
)

__all__ = [
    "BACKUP_PREFIX",
    "MAX_BACKUP_AGE",
    "BackupStore",
    "JsonFileBackupStore",
    "backup_key",
]
