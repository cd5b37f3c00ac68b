"""
Disk persistence for the Intercom mirror.

Two JSON files live in the cache directory:
- intercom-cache.json: the four entity collections, materialized threads
  and last_refreshed
- cache-metadata.json: CacheMetadata (refresh bookkeeping)

Writes go to a temp file in the same directory and are renamed into place,
so a process killed mid-write never leaves a truncated cache behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .models import CacheSnapshot

logger = logging.getLogger(__name__)

CACHE_FILENAME = "intercom-cache.json"
METADATA_FILENAME = "cache-metadata.json"


class PersistenceError(Exception):
    """Cache files could not be read or written."""


def _atomic_write_json(path: Path, payload: Any, indent: Optional[int] = None) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        # Leave the previous file intact, drop the partial one
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class CacheStorage:
    """Reads and writes cache snapshots under a directory."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / CACHE_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.cache_dir / METADATA_FILENAME

    def exists(self) -> bool:
        return self.cache_path.exists() and self.metadata_path.exists()

    def save(self, snapshot: CacheSnapshot) -> None:
        """
        Persist a snapshot.

        Raises:
            PersistenceError: if the directory or either file cannot be written
        """
        cache_data = snapshot.model_dump(mode="json", exclude={"metadata"})
        metadata = snapshot.metadata.model_dump(mode="json")

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            _atomic_write_json(self.cache_path, cache_data)
            _atomic_write_json(self.metadata_path, metadata, indent=2)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save cache to {self.cache_dir}: {e}") from e

        logger.debug(f"Cache saved to {self.cache_dir}")

    def load(self) -> Optional[CacheSnapshot]:
        """
        Load the persisted snapshot.

        Returns:
            The snapshot, or None when either file is missing (cold start)

        Raises:
            PersistenceError: if a file exists but is unreadable or invalid
        """
        if not self.exists():
            logger.info(f"No cached data found in {self.cache_dir}, will fetch fresh")
            return None

        try:
            with open(self.cache_path, encoding="utf-8") as f:
                cache_data = json.load(f)
            with open(self.metadata_path, encoding="utf-8") as f:
                metadata = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read cache from {self.cache_dir}: {e}") from e

        if not isinstance(cache_data, dict) or not isinstance(metadata, dict):
            raise PersistenceError(f"Cache files in {self.cache_dir} are not JSON objects")

        try:
            return CacheSnapshot.model_validate({**cache_data, "metadata": metadata})
        except ValidationError as e:
            raise PersistenceError(f"Cache in {self.cache_dir} does not match schema: {e}") from e
