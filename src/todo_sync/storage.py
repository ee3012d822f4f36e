"""Durable string key/value storage for session state.

Everything the library needs to survive a restart (the mirrored
collection, notification timestamps and settings, the storage mode and the
last committed fingerprint) lives in a flat string-to-string store. Writes
are eager, so there is nothing to flush on teardown.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .todo import TaskRecord
from .utils.validation import clean_collection


logger = logging.getLogger(__name__)

# Durable keys
TODOS_KEY = "todos"
LAST_SYNCED_TODOS_KEY = "lastSyncedTodos"
STORAGE_MODE_KEY = "storageMode"
LAST_SYNC_FINGERPRINT_KEY = "lastSyncFingerprint"
LOCAL_STORAGE_WARNING_DISMISSED_KEY = "localStorageWarningDismissed"
LAST_AGED_ITEMS_NOTIFICATION_KEY = "lastAgedItemsNotification"
LAST_HIGH_PRIORITY_NOTIFICATION_KEY = "lastHighPriorityNotification"
LAST_DAILY_DIGEST_KEY = "lastDailyDigest"
NOTIFICATION_SETTINGS_KEY = "notificationSettings"


class KeyValueStore(ABC):
    """A string to string store."""

    @abstractmethod
    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        pass

    def get_int(self, key: str) -> Optional[int]:
        """Read an integer value; None when absent or malformed."""
        value = self.get(key)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring non-integer value for {key!r}: {value!r}")
            return None

    def set_int(self, key: str, value: int) -> None:
        self.set(key, str(int(value)))


class MemoryStore(KeyValueStore):
    """Volatile store, mainly for tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileStore(KeyValueStore):
    """Store persisted as one JSON object, rewritten atomically on each change."""

    def __init__(self, path):
        self.path = Path(os.path.expanduser(str(path)))
        self._data = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load state from {self.path}: {e}; starting empty")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed state file {self.path}")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self._persist()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._persist()

    def keys(self) -> List[str]:
        return list(self._data)


def load_records(store: KeyValueStore, key: str = TODOS_KEY) -> List[TaskRecord]:
    """Read a stored collection; an unreadable one is empty."""
    raw = store.get(key)
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Stored collection {key!r} is corrupt: {e}")
        return []
    if not isinstance(items, list):
        logger.error(f"Stored collection {key!r} is not a list")
        return []
    return clean_collection(items, f"Stored collection {key!r}")


def save_records(store: KeyValueStore, records: Iterable[TaskRecord], key: str = TODOS_KEY) -> None:
    """Write a collection into the local store."""
    store.set(key, json.dumps([record.to_dict() for record in records], ensure_ascii=False))
