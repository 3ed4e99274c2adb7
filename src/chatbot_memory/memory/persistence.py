"""
Snapshot persistence for the session store.

One versioned JSON file per persistence directory. A file of another
version, or one that fails to parse, is treated as absent (cold start).
Writes go to a temp file in the same directory and are renamed over the
target, so readers never see a half-written snapshot.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .types import StoreSnapshot

logger = logging.getLogger(__name__)

STORE_VERSION = 2
STORE_FILENAME = "memory.json"


class SnapshotStore:
    """Reads and writes the memory snapshot file."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    @property
    def path(self) -> Path:
        return self.directory / STORE_FILENAME

    def load(self) -> Optional[StoreSnapshot]:
        """Return the stored snapshot, or None if there is nothing usable."""
        path = self.path
        if not path.exists():
            logger.debug("No snapshot at %s, starting fresh", path)
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read snapshot %s, starting fresh: %s", path, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Snapshot %s is not an object, starting fresh", path)
            return None
        if data.get("version") != STORE_VERSION:
            logger.warning(
                "Snapshot version mismatch (expected %d, found %s), starting fresh",
                STORE_VERSION,
                data.get("version"),
            )
            return None

        try:
            return StoreSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed snapshot %s, starting fresh: %s", path, e)
            return None

    def save(self, snapshot: StoreSnapshot) -> bool:
        """Atomically replace the snapshot file. Returns False on failure."""
        tmp_path = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".memory-", suffix=".tmp", dir=self.directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to save snapshot %s: %s", self.path, e)
            return False
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
