"""Queue of collection snapshots waiting for connectivity."""

import logging
from typing import List, Optional

from ..todo import TaskRecord
from .models import QueuedWrite


logger = logging.getLogger(__name__)


class OfflineQueue:
    """Holds pending whole-collection writes.

    Entries are full snapshots that get re-reconciled against the remote
    copy when they are drained, so only the newest one ever matters:
    enqueuing replaces whatever was waiting.
    """

    def __init__(self):
        self._entry: Optional[QueuedWrite] = None

    def __len__(self) -> int:
        return 0 if self._entry is None else 1

    def __bool__(self) -> bool:
        return self._entry is not None

    def enqueue(self, snapshot: List[TaskRecord], queued_at: Optional[int] = None,
                attempts: int = 0) -> QueuedWrite:
        """Queue a snapshot, coalescing with any entry already waiting."""
        if self._entry is not None:
            logger.debug("Coalescing queued write with newer snapshot")
        self._entry = QueuedWrite(snapshot=list(snapshot), attempts=attempts, queued_at=queued_at)
        return self._entry

    def peek(self) -> Optional[QueuedWrite]:
        return self._entry

    def pop(self) -> Optional[QueuedWrite]:
        entry, self._entry = self._entry, None
        return entry

    def clear(self) -> None:
        self._entry = None
