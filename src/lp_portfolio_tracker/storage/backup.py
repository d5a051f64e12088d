"""Local last-resort persistence of successfully fetched snapshots."""

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from lp_portfolio_tracker.core.models import BackupRecord, PortfolioSnapshot

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "portfolio_backup_"
MAX_BACKUP_AGE = 24 * 60 * 60

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


def backup_key(key: str) -> str:
    """Namespaced storage key for a portfolio key."""
    return f"{BACKUP_PREFIX}{key}"


class BackupStore(Protocol):
    """
    Interface of the local backup tier.

    ``save`` never raises; ``load`` returns None for missing, unreadable
    or expired records.

    """

    async def save(self, key: str, snapshot: PortfolioSnapshot) -> None:
        ...

    async def load(self, key: str) -> BackupRecord | None:
        ...


class JsonFileBackupStore:
    """
    Stores one JSON document per portfolio key.

    Each file holds ``{"data": <snapshot>, "timestamp": <epoch ms>}``.
    Writes go to a temporary file that atomically replaces the previous
    record, so a crash mid-write never leaves a truncated backup behind.

    Parameters
    ----------
    directory : Path
        Directory holding the backup files (created on first save)
    max_age : float
        Records older than this many seconds are treated as absent
    clock : Callable[[], float]
        Returns current epoch time in seconds

    """

    def __init__(
        self,
        directory: Path,
        max_age: float = MAX_BACKUP_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self.max_age = max_age
        self.clock = clock

    def path_for(self, key: str) -> Path:
        """
        File path of the record for a key.

        Keys that are not filesystem-safe are replaced by their SHA-256 digest.

        Parameters
        ----------
        key : str
            Portfolio key

        Returns
        -------
        Path
            Backup file path

        """
        name = key if _SAFE_KEY.match(key) else hashlib.sha256(key.encode()).hexdigest()
        return self.directory / f"{backup_key(name)}.json"

    async def save(self, key: str, snapshot: PortfolioSnapshot) -> None:
        """Persist a snapshot, logging and swallowing any failure."""
        try:
            payload = {
                "data": snapshot.model_dump(mode="json", by_alias=True),
                "timestamp": int(self.clock() * 1000),
            }
            await asyncio.to_thread(self._write, self.path_for(key), payload)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to save backup for %s: %s", key, e)
            return
        logger.debug("Backup saved for %s (%d positions)", key, len(snapshot.lp_positions))

    async def load(self, key: str) -> BackupRecord | None:
        """
        Load the record for a key if it exists and is fresh enough.

        Parameters
        ----------
        key : str
            Portfolio key

        Returns
        -------
        BackupRecord | None
            The record, or None if absent, unreadable, or older than ``max_age``

        """
        path = self.path_for(key)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read backup for %s: %s", key, e)
            return None

        try:
            document = json.loads(raw)
            record = BackupRecord(key=key, data=document["data"], timestamp=document["timestamp"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.warning("Discarding unreadable backup for %s: %s", key, e)
            return None

        age = record.age_seconds(self.clock())
        if age < 0:
            logger.warning("Discarding backup for %s: timestamp is %.0fs in the future", key, -age)
            return None
        if age > self.max_age:
            logger.info("Ignoring backup for %s: %.1f hours old", key, age / 3600)
            return None

        return record

    def _write(self, path: Path, payload: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
