"""Automatic resolution of field-level conflicts.

Each participating field belongs to a resolution class:

========== =========== ==============================================
field      class       policy
========== =========== ==============================================
text       user-only   never resolved automatically
completed  latest-wins value from the later side, ties go to remote
priority   latest-wins same rule
order      average     floor of the mean of both values
tags       union       normalized union of both sets
========== =========== ==============================================

A conflict is resolvable only if none of its disagreeing fields is
user-only. The alternate timestamp-based strategy takes the later record
whole and resolves every conflict.
"""

import logging
from typing import Iterable, List, Optional

from ..normalize import normalize, union_tags
from ..todo import TaskRecord
from .conflict_detection import ConflictDetector, latest_side
from .models import (
    MergeOutcome,
    RecordConflict,
    ResolutionResult,
    ResolutionStrategy,
    Source,
)


logger = logging.getLogger(__name__)

USER_ONLY = "user_only"
LATEST_WINS = "latest_wins"
AVERAGE = "average"
UNION = "union"

FIELD_POLICIES = {
    "text": USER_ONLY,
    "completed": LATEST_WINS,
    "priority": LATEST_WINS,
    "order": AVERAGE,
    "tags": UNION,
}


def merged_last_modified(local: TaskRecord, remote: TaskRecord) -> Optional[int]:
    """max(local.lastModified, remote.lastModified), missing values as 0.

    Stays None when neither side carries a lastModified.
    """
    if local.last_modified is None and remote.last_modified is None:
        return None
    return max(local.last_modified or 0, remote.last_modified or 0)


class ConflictResolver:
    """Resolves record conflicts using a configurable strategy."""

    def __init__(self, strategy: ResolutionStrategy = ResolutionStrategy.FIELD_LEVEL):
        self.strategy = strategy
        self.logger = logging.getLogger(__name__)

    def is_auto_resolvable(self, conflict: RecordConflict) -> bool:
        if self.strategy == ResolutionStrategy.TIMESTAMP_BASED:
            return True
        return all(FIELD_POLICIES.get(f.field) != USER_ONLY for f in conflict.fields)

    def resolve(self, conflicts: Iterable[RecordConflict]) -> ResolutionResult:
        """Partition conflicts into resolved records and ones needing the user."""
        result = ResolutionResult()
        for conflict in conflicts:
            if not self.is_auto_resolvable(conflict):
                result.needs_user_input.append(conflict)
                continue
            result.resolved.append(self.resolve_conflict(conflict))

        self.logger.debug(
            f"Auto-resolved {len(result.resolved)} conflicts, "
            f"{len(result.needs_user_input)} need user input"
        )
        return result

    def resolve_conflict(self, conflict: RecordConflict) -> TaskRecord:
        """Resolve one conflict that is known to be resolvable."""
        if self.strategy == ResolutionStrategy.TIMESTAMP_BASED:
            return self._resolve_timestamp_based(conflict.local, conflict.remote)
        if self.strategy == ResolutionStrategy.FIELD_LEVEL:
            return self.merge_records(conflict.local, conflict.remote, conflict.field_names)
        raise ValueError(f"Unknown resolution strategy: {self.strategy}")

    def merge_records(self, local: TaskRecord, remote: TaskRecord,
                      fields: Optional[Iterable[str]] = None) -> TaskRecord:
        """Merge two replicas field by field, starting from the local one.

        Args:
            local: Local replica
            remote: Remote replica
            fields: Disagreeing fields to merge; all non-text policy fields
                when None

        Returns:
            The merged record
        """
        if fields is None:
            fields = [name for name, policy in FIELD_POLICIES.items() if policy != USER_ONLY]

        changes = {}
        for field_name in fields:
            policy = FIELD_POLICIES.get(field_name)
            if policy == USER_ONLY:
                raise ValueError(f"Field {field_name!r} cannot be merged automatically")
            changes[field_name] = self._apply_policy(policy, field_name, local, remote)

        changes["last_modified"] = merged_last_modified(local, remote)
        return local.copy(**changes)

    def _apply_policy(self, policy: str, field_name: str, local: TaskRecord, remote: TaskRecord):
        """Apply a field's resolution class to the two replicas."""
        local_value = getattr(local, field_name)
        remote_value = getattr(remote, field_name)

        if policy == LATEST_WINS:
            return local_value if latest_side(local, remote) is Source.LOCAL else remote_value

        elif policy == AVERAGE:
            return (normalize(local_value, field_name) + normalize(remote_value, field_name)) // 2

        elif policy == UNION:
            return union_tags(local_value, remote_value)

        raise ValueError(f"No resolution policy for field {field_name!r}")

    def _resolve_timestamp_based(self, local: TaskRecord, remote: TaskRecord) -> TaskRecord:
        """Keep whichever replica was modified last, as a unit."""
        winner = local if latest_side(local, remote) is Source.LOCAL else remote
        return winner.copy()


def auto_resolve(conflicts: Iterable[RecordConflict],
                 strategy: ResolutionStrategy = ResolutionStrategy.FIELD_LEVEL) -> ResolutionResult:
    """Resolve what can be resolved without the user."""
    return ConflictResolver(strategy).resolve(conflicts)


def smart_merge(local: Iterable[TaskRecord], remote: Iterable[TaskRecord],
                strategy: ResolutionStrategy = ResolutionStrategy.FIELD_LEVEL) -> MergeOutcome:
    """Detect and auto-resolve differences between two collections.

    Unresolved conflicts keep their local side in ``records`` so the result
    is always a complete collection; callers decide whether to commit it.
    """
    detection = ConflictDetector().detect(local, remote)
    resolution = auto_resolve(detection.conflicts, strategy)

    records: List[TaskRecord] = [merge.record for merge in detection.safe_merges]
    records.extend(resolution.resolved)
    records.extend(conflict.local for conflict in resolution.needs_user_input)

    summary = {
        "total": len(records),
        "conflicts": len(resolution.needs_user_input),
        "autoResolved": len(resolution.resolved),
        "safelyMerged": len(detection.safe_merges),
    }
    logger.info(f"Smart merge summary: {summary}")
    return MergeOutcome(records=records, unresolved=resolution.needs_user_input, summary=summary)
