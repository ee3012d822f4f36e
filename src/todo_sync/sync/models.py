"""Data models for collection synchronization.

These types carry the results of conflict detection and resolution between
the local collection and the remote copy, plus the orchestrator's status
and user decisions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..todo import TaskRecord, TodoId
from ..utils.datetime import ms_to_iso_string


class SyncMode(Enum):
    """Where the collection lives."""
    LOCAL_ONLY = "local"
    CLOUD = "cloud"


class SyncStatus(Enum):
    """Orchestrator status as observed by the UI."""
    IDLE = "idle"
    SAVING = "saving"
    LOADING = "loading"
    ERROR = "error"
    CONFLICT = "conflict"
    OFFLINE = "offline"


class MergeKind(Enum):
    ADD = "add"
    UPDATE = "update"


class Source(Enum):
    """Which replica a record came from."""
    LOCAL = "local"
    REMOTE = "remote"


class ResolutionStrategy(Enum):
    """Automatic conflict resolution strategies."""
    FIELD_LEVEL = "field_level"
    TIMESTAMP_BASED = "timestamp_based"


class DecisionKind(Enum):
    """User decisions for conflicts that need input."""
    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    PER_FIELD = "per-field"


@dataclass
class SafeMerge:
    """A reconciliation outcome that needs no choice between divergent edits."""
    kind: MergeKind
    record: TaskRecord
    source: Source

    @property
    def id(self) -> TodoId:
        return self.record.id


@dataclass
class FieldConflict:
    """One participating field on which the replicas disagree."""
    field: str
    local_value: Any
    remote_value: Any
    local_normalized: Any
    remote_normalized: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "localValue": self.local_value,
            "remoteValue": self.remote_value,
            "localNormalized": self.local_normalized,
            "remoteNormalized": self.remote_normalized,
        }


@dataclass
class RecordConflict:
    """Both replicas changed the same record in incompatible ways."""
    id: TodoId
    local: TaskRecord
    remote: TaskRecord
    fields: List[FieldConflict] = field(default_factory=list)

    @property
    def field_names(self) -> List[str]:
        return [f.field for f in self.fields]

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        return f"Record {self.id!r} differs in: {', '.join(self.field_names)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "local": self.local.to_dict(),
            "remote": self.remote.to_dict(),
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass
class DetectionResult:
    safe_merges: List[SafeMerge] = field(default_factory=list)
    conflicts: List[RecordConflict] = field(default_factory=list)


@dataclass
class ResolutionResult:
    resolved: List[TaskRecord] = field(default_factory=list)
    needs_user_input: List[RecordConflict] = field(default_factory=list)


@dataclass
class MergeOutcome:
    """Detection and automatic resolution applied to two collections."""
    records: List[TaskRecord]
    unresolved: List[RecordConflict]
    summary: Dict[str, int]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.unresolved)


@dataclass
class ConflictInfo:
    """Conflicts promoted to the UI, with enough context to resolve them.

    ``merged`` holds the records that were reconciled without user input;
    the user's decisions are applied on top of it.
    """
    conflicts: List[RecordConflict]
    local: List[TaskRecord]
    remote: List[TaskRecord]
    local_modified: Optional[int]
    remote_modified: Optional[int]
    timestamp: int
    merged: List[TaskRecord] = field(default_factory=list)
    kind: str = "field-based"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflicts": [c.to_dict() for c in self.conflicts],
            "local": [r.to_dict() for r in self.local],
            "remote": [r.to_dict() for r in self.remote],
            "localModified": self.local_modified,
            "remoteModified": self.remote_modified,
            "timestamp": self.timestamp,
            "type": self.kind,
        }


@dataclass
class ConflictDecision:
    """How the user chose to settle the pending conflicts.

    For ``PER_FIELD`` decisions, ``choices`` maps a record id to a mapping
    of field name to ``"local"`` or ``"remote"``; unlisted fields keep the
    local value.
    """
    kind: DecisionKind
    choices: Dict[TodoId, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def keep_local(cls) -> "ConflictDecision":
        return cls(DecisionKind.KEEP_LOCAL)

    @classmethod
    def keep_remote(cls) -> "ConflictDecision":
        return cls(DecisionKind.KEEP_REMOTE)

    @classmethod
    def per_field(cls, choices: Dict[TodoId, Dict[str, str]]) -> "ConflictDecision":
        return cls(DecisionKind.PER_FIELD, choices)


@dataclass
class ReconcileResult:
    """Output of reconciling a local snapshot with the remote copy.

    ``records`` is the full merged collection including tombstones. It is
    empty when ``conflict_info`` is set.
    """
    records: List[TaskRecord] = field(default_factory=list)
    conflict_info: Optional[ConflictInfo] = None
    summary: Dict[str, int] = field(default_factory=dict)

    @property
    def has_conflicts(self) -> bool:
        return self.conflict_info is not None


@dataclass
class RemoteSnapshot:
    """The remote collection as last read, with its modification instant."""
    records: List[TaskRecord] = field(default_factory=list)
    modified: Optional[int] = None
    exists: bool = True


@dataclass
class QueuedWrite:
    """A snapshot waiting for connectivity."""
    snapshot: List[TaskRecord]
    attempts: int = 0
    queued_at: Optional[int] = None


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    status: SyncStatus
    message: Optional[str] = None
    written: bool = False
    records: List[TaskRecord] = field(default_factory=list)
    conflicts: List[RecordConflict] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    def complete(self) -> "SyncResult":
        """Stamp the completion time."""
        self.completed_at = datetime.now(timezone.utc)
        return self

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
            "written": self.written,
            "records": len(self.records),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "summary": dict(self.summary),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def describe_instant(value: Optional[int]) -> str:
    """Render an epoch-ms value for status displays."""
    return ms_to_iso_string(value) or "never"
