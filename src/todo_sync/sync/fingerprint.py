"""Order-invariant fingerprints of a collection.

The fingerprint only covers record ids and the canonical values of the
participating fields of live records, so reordering a collection or
touching metadata never looks like a change worth writing.
"""

import hashlib
import json
from typing import Iterable

from ..normalize import PARTICIPATING_FIELDS, normalize
from ..todo import TaskRecord


def record_signature(record: TaskRecord) -> dict:
    data = {"id": record.id}
    for field_name in PARTICIPATING_FIELDS:
        data[field_name] = normalize(getattr(record, field_name), field_name)
    return data


def collection_fingerprint(records: Iterable[TaskRecord]) -> str:
    """SHA-256 over the sorted signatures of non-deleted records."""
    signatures = [record_signature(r) for r in records if not r.deleted]
    signatures.sort(key=lambda s: (str(type(s["id"])), str(s["id"])))
    payload = json.dumps(signatures, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode()).hexdigest()
