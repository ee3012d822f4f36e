"""Task record model for the todo sync library."""

import random
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Union

from .normalize import DEFAULT_ORDER, DEFAULT_PRIORITY
from .utils.datetime import now_ms


TodoId = Union[str, int]

# Wire keys owned by the record model; anything else is kept in ``extensions``.
KNOWN_KEYS = frozenset({
    "id", "text", "completed", "tags", "priority", "order",
    "timestamp", "lastModified", "deleted", "deletedAt", "metadata",
})


class Priority(IntEnum):
    """Task priority levels (5 is highest)."""
    LOWEST = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    HIGHEST = 5


PRIORITY_LABELS = {
    Priority.HIGHEST: "Highest",
    Priority.HIGH: "High",
    Priority.MEDIUM: "Medium",
    Priority.LOW: "Low",
    Priority.LOWEST: "Lowest",
}


def priority_label(priority: int) -> str:
    """Human readable label for a priority value."""
    try:
        return PRIORITY_LABELS[Priority(priority)]
    except ValueError:
        return PRIORITY_LABELS[Priority.MEDIUM]


def generate_todo_id(timestamp: Optional[int] = None) -> str:
    """Generate a fresh record id of the form ``todo_{ms}_{random}``."""
    ms = timestamp if timestamp is not None else now_ms()
    suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=9))
    return f"todo_{ms}_{suffix}"


@dataclass
class TaskRecord:
    """A single task as held in a collection and exchanged with the remote copy.

    Instants are epoch milliseconds. ``timestamp`` and ``last_modified`` may be
    missing on records written by older clients; comparisons fall back through
    :meth:`effective_modified`.
    """

    id: TodoId
    text: str = ""
    completed: bool = False
    tags: List[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    order: int = DEFAULT_ORDER
    timestamp: Optional[int] = None
    last_modified: Optional[int] = None

    # Tombstone
    deleted: bool = False
    deleted_at: Optional[int] = None

    # Never compared
    metadata: Dict[str, Any] = field(default_factory=dict)
    extensions: Dict[str, Any] = field(default_factory=dict)

    def effective_modified(self) -> int:
        """lastModified, falling back to timestamp, then 0."""
        return self.last_modified or self.timestamp or 0

    def copy(self, **changes) -> "TaskRecord":
        """Return a copy with independent list/dict fields."""
        changes.setdefault("tags", list(self.tags))
        changes.setdefault("metadata", dict(self.metadata))
        changes.setdefault("extensions", dict(self.extensions))
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the record to its camelCase wire form."""
        data: Dict[str, Any] = dict(self.extensions)
        data.update({
            "id": self.id,
            "text": self.text,
            "completed": self.completed,
            "tags": list(self.tags),
            "priority": self.priority,
            "order": self.order,
        })
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.last_modified is not None:
            data["lastModified"] = self.last_modified
        if self.deleted:
            data["deleted"] = True
            data["deletedAt"] = self.deleted_at
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskRecord":
        """Create a record from its wire form.

        Out-of-range priorities fall back to the default; unknown keys are
        preserved in ``extensions``.
        """
        priority = data.get("priority")
        try:
            priority = int(priority) if priority else DEFAULT_PRIORITY
        except (TypeError, ValueError):
            priority = DEFAULT_PRIORITY
        if priority not in range(Priority.LOWEST, Priority.HIGHEST + 1):
            priority = DEFAULT_PRIORITY

        tags = data.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]

        return cls(
            id=data["id"],
            text=data.get("text") or "",
            completed=bool(data.get("completed", False)),
            tags=list(tags),
            priority=priority,
            order=data.get("order") or DEFAULT_ORDER,
            timestamp=data.get("timestamp"),
            last_modified=data.get("lastModified"),
            deleted=bool(data.get("deleted", False)),
            deleted_at=data.get("deletedAt"),
            metadata=dict(data.get("metadata") or {}),
            extensions={k: v for k, v in data.items() if k not in KNOWN_KEYS},
        )


def new_record(text: str, tags: Optional[Iterable[str]] = None,
               priority: int = DEFAULT_PRIORITY, order: int = DEFAULT_ORDER,
               now: Optional[int] = None) -> TaskRecord:
    """Create a record with a fresh id and ``timestamp == lastModified == now``."""
    created = now if now is not None else now_ms()
    return TaskRecord(
        id=generate_todo_id(created),
        text=text.strip(),
        tags=list(tags or []),
        priority=priority,
        order=order,
        timestamp=created,
        last_modified=created,
    )


def touch(record: TaskRecord, now: Optional[int] = None, **changes) -> TaskRecord:
    """Return a copy with ``changes`` applied and lastModified bumped."""
    return record.copy(last_modified=now if now is not None else now_ms(), **changes)


def tombstone(record: TaskRecord, now: Optional[int] = None) -> TaskRecord:
    """Return a deleted copy of ``record``."""
    deleted_at = now if now is not None else now_ms()
    return record.copy(deleted=True, deleted_at=deleted_at, last_modified=deleted_at)


def active_records(records: Iterable[TaskRecord]) -> List[TaskRecord]:
    """Records that are not tombstoned."""
    return [record for record in records if not record.deleted]


def sort_for_display(records: Iterable[TaskRecord]) -> List[TaskRecord]:
    """Order records by ``order`` then ``timestamp``."""
    return sorted(records, key=lambda r: (r.order or 0, r.timestamp or 0))


def find_record(records: Iterable[TaskRecord], todo_id: TodoId) -> Optional[TaskRecord]:
    for record in records:
        if record.id == todo_id:
            return record
    return None
