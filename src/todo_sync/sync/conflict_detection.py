"""Field-level conflict detection between two replicas of a collection.

Records are matched by id. A record present on only one side is a safe
addition; a record present on both sides is compared over the
participating fields after normalization. Metadata, timestamps, ids and
the tombstone flag never take part in the comparison.
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..normalize import PARTICIPATING_FIELDS, deep_equal, normalize
from ..todo import TaskRecord, TodoId
from .models import (
    DetectionResult,
    FieldConflict,
    MergeKind,
    RecordConflict,
    SafeMerge,
    Source,
)


logger = logging.getLogger(__name__)


def latest_side(local: TaskRecord, remote: TaskRecord) -> Source:
    """Pick the more recently modified side; ties go to remote."""
    if local.effective_modified() > remote.effective_modified():
        return Source.LOCAL
    return Source.REMOTE


def compare_fields(local: TaskRecord, remote: TaskRecord) -> List[FieldConflict]:
    """List the participating fields whose normalized values differ."""
    conflicts = []
    for field_name in PARTICIPATING_FIELDS:
        local_value = getattr(local, field_name)
        remote_value = getattr(remote, field_name)
        local_normalized = normalize(local_value, field_name)
        remote_normalized = normalize(remote_value, field_name)
        if not deep_equal(local_normalized, remote_normalized):
            conflicts.append(FieldConflict(
                field=field_name,
                local_value=local_value,
                remote_value=remote_value,
                local_normalized=local_normalized,
                remote_normalized=remote_normalized,
            ))
    return conflicts


def _index(records: Iterable[TaskRecord]) -> Dict[TodoId, TaskRecord]:
    indexed: Dict[TodoId, TaskRecord] = {}
    for record in records:
        if record.id in indexed:
            logger.warning(f"Duplicate id {record.id!r} in collection; keeping the later record")
        indexed[record.id] = record
    return indexed


class ConflictDetector:
    """Partitions the union of two collections into safe merges and conflicts."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def detect(self, local: Iterable[TaskRecord], remote: Iterable[TaskRecord]) -> DetectionResult:
        """Detect differences between the local and remote collections.

        Args:
            local: Records held on this device
            remote: Records read from the remote copy

        Returns:
            Safe merges and record conflicts; every id in either input
            appears in exactly one of them
        """
        local_by_id = _index(local)
        remote_by_id = _index(remote)
        result = DetectionResult()

        # Local ids first, then remote-only ids, both in input order
        ordered_ids = list(local_by_id)
        ordered_ids.extend(i for i in remote_by_id if i not in local_by_id)

        for record_id in ordered_ids:
            local_record = local_by_id.get(record_id)
            remote_record = remote_by_id.get(record_id)

            if remote_record is None:
                result.safe_merges.append(SafeMerge(MergeKind.ADD, local_record, Source.LOCAL))
                continue
            if local_record is None:
                result.safe_merges.append(SafeMerge(MergeKind.ADD, remote_record, Source.REMOTE))
                continue

            conflict = self.detect_record(local_record, remote_record)
            if conflict is None:
                source = latest_side(local_record, remote_record)
                chosen = local_record if source is Source.LOCAL else remote_record
                result.safe_merges.append(SafeMerge(MergeKind.UPDATE, chosen, source))
            else:
                result.conflicts.append(conflict)

        self.logger.debug(
            f"Detected {len(result.safe_merges)} safe merges and "
            f"{len(result.conflicts)} conflicts over {len(ordered_ids)} records"
        )
        return result

    def detect_record(self, local: TaskRecord, remote: TaskRecord) -> Optional[RecordConflict]:
        """Compare two replicas of one record; None when they agree."""
        fields = compare_fields(local, remote)
        if not fields:
            return None
        return RecordConflict(id=local.id, local=local, remote=remote, fields=fields)


def detect(local: Iterable[TaskRecord], remote: Iterable[TaskRecord]) -> DetectionResult:
    """Detect safe merges and conflicts between two collections."""
    return ConflictDetector().detect(local, remote)
