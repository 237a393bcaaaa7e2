import json
import logging
import os
import fcntl
from pathlib import Path
from typing import List, Optional
from .models import Audiobook, Catalog
from .config import settings
from .errors import PersistenceError

logger = logging.getLogger(__name__)

class CatalogStore:
    """JSON-file backed catalog. The controller mutates items in place and calls save()."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.catalog = Catalog()
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No library file found at {self.path}, starting with an empty catalog.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
                self.catalog = Catalog(**data)
            logger.info(f"Loaded {len(self.catalog.items)} audiobooks from {self.path}")
        except Exception as e:
            logger.error(f"Failed to load library: {e}. Starting with an empty catalog.", exc_info=True)

    def get(self, item_id: str) -> Optional[Audiobook]:
        return self.catalog.items.get(item_id)

    def items(self) -> List[Audiobook]:
        return list(self.catalog.items.values())

    def add(self, item: Audiobook):
        self.catalog.items[item.id] = item

    def most_recently_played(self) -> Optional[Audiobook]:
        if self.catalog.last_played_id in self.catalog.items:
            return self.catalog.items[self.catalog.last_played_id]
        played = [i for i in self.catalog.items.values() if i.last_played_at is not None]
        if not played:
            return None
        return max(played, key=lambda i: i.last_played_at)

    def save(self, item: Audiobook):
        """Record the item and write the catalog. Raises PersistenceError on failure."""
        self.catalog.items[item.id] = item
        if item.last_played_at is not None:
            last = self.get(self.catalog.last_played_id) if self.catalog.last_played_id else None
            if last is None or (last.last_played_at or 0) <= item.last_played_at:
                self.catalog.last_played_id = item.id

        if not settings.PERSIST_ENABLED:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            # Atomic write pattern with locking
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    raise PersistenceError(f"Library file {tmp_path} is locked by another writer")

                try:
                    json.dump(self.catalog.model_dump(mode="json"), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            raise PersistenceError(f"Failed to save library to {self.path}: {e}") from e
