"""Record validation and cleanup utilities.

Raw records arrive from the remote copy, from the local mirror and from
older clients, so they are checked before they are trusted. The helpers
here either report problems (``validate_*``), repair what can be repaired
(``normalize_record``/``cleanup_records``) or, for collections that are
about to be committed, refuse to continue (``validate_collection``).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..normalize import DEFAULT_ORDER, DEFAULT_PRIORITY
from ..sync.errors import InvariantViolation
from ..todo import TaskRecord
from .datetime import now_ms

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Outcome of validating a list of raw records."""
    is_valid: bool
    issues: List[str] = field(default_factory=list)

    @property
    def score(self) -> int:
        return max(0, 100 - len(self.issues) * 10)


def _is_valid_priority(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 5


def validate_record(data: Any, index: int = 0) -> List[str]:
    """Return the problems found in one raw record dict."""
    if not isinstance(data, dict):
        return [f"Record at index {index} is not a valid object"]

    issues = []
    if data.get("id") in (None, ""):
        issues.append(f"Record at index {index} is missing an ID")

    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        issues.append(f"Record at index {index} has empty or invalid text")

    timestamp = data.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, (int, float)):
        issues.append(f"Record at index {index} has invalid timestamp")

    if "priority" in data and not _is_valid_priority(data["priority"]):
        issues.append(f"Record at index {index} has invalid priority: {data['priority']}")

    if "tags" in data and not isinstance(data["tags"], list):
        issues.append(f"Record at index {index} has invalid tags array")

    if "completed" in data and not isinstance(data["completed"], bool):
        issues.append(f"Record at index {index} has invalid completed status")

    return issues


def validate_records(items: Any) -> ValidationReport:
    if not isinstance(items, list):
        return ValidationReport(is_valid=False, issues=["Records must be a list"])

    issues: List[str] = []
    for index, item in enumerate(items):
        issues.extend(validate_record(item, index))
    return ValidationReport(is_valid=not issues, issues=issues)


def is_valid_record(data: Any) -> bool:
    """Whether a raw record is usable at all (has an id and some text)."""
    return (
        isinstance(data, dict)
        and data.get("id") not in (None, "")
        and isinstance(data.get("text"), str)
        and bool(data["text"].strip())
    )


def normalize_record(data: Dict[str, Any], now: Optional[int] = None) -> Dict[str, Any]:
    """Fill defaults and coerce types on a raw record dict."""
    normalized = dict(data)
    text = data.get("text")
    normalized["text"] = text.strip() if isinstance(text, str) else str(text or "")
    normalized["completed"] = bool(data.get("completed"))
    timestamp = data.get("timestamp") or data.get("lastModified")
    normalized["timestamp"] = timestamp or (now if now is not None else now_ms())
    normalized["tags"] = data["tags"] if isinstance(data.get("tags"), list) else []
    normalized["priority"] = data["priority"] if _is_valid_priority(data.get("priority")) else DEFAULT_PRIORITY
    order = data.get("order")
    normalized["order"] = order if isinstance(order, int) and not isinstance(order, bool) else DEFAULT_ORDER
    return normalized


def cleanup_records(items: Iterable[Any], now: Optional[int] = None) -> Tuple[List[TaskRecord], int]:
    """Drop unusable entries and duplicate ids; normalize the rest.

    Returns:
        The cleaned records and the number of entries removed
    """
    cleaned: List[TaskRecord] = []
    seen = set()
    removed = 0

    for item in items or []:
        if not is_valid_record(item) or item["id"] in seen:
            removed += 1
            continue
        seen.add(item["id"])
        cleaned.append(TaskRecord.from_dict(normalize_record(item, now)))

    if removed:
        logger.info(f"Removed {removed} invalid or duplicate records during cleanup")
    return cleaned, removed


def validate_collection(records: Iterable[TaskRecord]) -> None:
    """Check the invariants a committed collection must hold.

    Raises:
        InvariantViolation: on a duplicate id, an out-of-range priority, or
            a lastModified earlier than the creation timestamp
    """
    seen = set()
    for record in records:
        if record.id in seen:
            raise InvariantViolation(f"Duplicate record id in collection: {record.id!r}")
        seen.add(record.id)

        if not _is_valid_priority(record.priority):
            raise InvariantViolation(f"Record {record.id!r} has priority {record.priority!r}")

        if (record.timestamp is not None and record.last_modified is not None
                and record.last_modified < record.timestamp):
            raise InvariantViolation(
                f"Record {record.id!r} modified ({record.last_modified}) before "
                f"it was created ({record.timestamp})"
            )


def clean_collection(items: List[Any], source: str, now: Optional[int] = None) -> List[TaskRecord]:
    """Report problems in a raw collection read from ``source`` and keep the usable records."""
    report = validate_records(items)
    if not report.is_valid:
        logger.warning(f"{source} has {len(report.issues)} record issues (score {report.score})")
        for issue in report.issues:
            logger.debug(issue)
    records, _ = cleanup_records(items, now)
    return records
