"""Tests for the task record model."""

from todo_sync.todo import (
    Priority,
    TaskRecord,
    active_records,
    find_record,
    generate_todo_id,
    new_record,
    priority_label,
    sort_for_display,
    tombstone,
    touch,
)


class TestTaskRecordSerialization:
    """Test the camelCase wire form."""

    def test_round_trip_preserves_fields(self):
        record = TaskRecord(
            id="todo_1", text="Write report", completed=True, tags=["work"],
            priority=4, order=2, timestamp=100, last_modified=200,
            metadata={"source": "import"},
        )
        data = record.to_dict()

        assert data["lastModified"] == 200
        assert data["metadata"] == {"source": "import"}
        assert "deleted" not in data
        assert TaskRecord.from_dict(data) == record

    def test_unknown_keys_are_kept_as_extensions(self):
        record = TaskRecord.from_dict({"id": 1, "text": "x", "imageUrl": "blob:1"})

        assert record.extensions == {"imageUrl": "blob:1"}
        assert record.to_dict()["imageUrl"] == "blob:1"

    def test_invalid_priority_falls_back_to_medium(self):
        assert TaskRecord.from_dict({"id": 1, "priority": 9}).priority == 3
        assert TaskRecord.from_dict({"id": 1, "priority": "high"}).priority == 3
        assert TaskRecord.from_dict({"id": 1}).priority == 3

    def test_tombstone_fields_serialized_only_when_deleted(self):
        record = tombstone(TaskRecord(id=1, text="x", timestamp=10), now=50)
        data = record.to_dict()

        assert data["deleted"] is True
        assert data["deletedAt"] == 50
        assert data["lastModified"] == 50


class TestRecordHelpers:
    """Test record construction and collection helpers."""

    def test_new_record_sets_both_instants(self):
        record = new_record("  Call mom ", tags=["family"], priority=5, now=1234)

        assert record.text == "Call mom"
        assert record.timestamp == record.last_modified == 1234
        assert record.id.startswith("todo_1234_")

    def test_generated_ids_are_unique(self):
        assert len({generate_todo_id(1) for _ in range(50)}) == 50

    def test_touch_bumps_last_modified(self):
        record = TaskRecord(id=1, text="x", timestamp=10, last_modified=10)
        updated = touch(record, now=99, completed=True)

        assert updated.completed is True
        assert updated.last_modified == 99
        assert record.completed is False

    def test_copy_does_not_share_tags(self):
        record = TaskRecord(id=1, tags=["a"])
        clone = record.copy()
        clone.tags.append("b")

        assert record.tags == ["a"]

    def test_effective_modified_falls_back(self):
        assert TaskRecord(id=1, timestamp=5, last_modified=9).effective_modified() == 9
        assert TaskRecord(id=1, timestamp=5).effective_modified() == 5
        assert TaskRecord(id=1).effective_modified() == 0

    def test_sort_and_filter(self):
        records = [
            TaskRecord(id="b", order=1, timestamp=1),
            TaskRecord(id="a", order=0, timestamp=2),
            TaskRecord(id="c", order=0, timestamp=1, deleted=True),
        ]

        assert [r.id for r in sort_for_display(active_records(records))] == ["a", "b"]
        assert find_record(records, "b") is records[0]
        assert find_record(records, "zzz") is None

    def test_priority_label(self):
        assert priority_label(Priority.HIGHEST) == "Highest"
        assert priority_label(42) == "Medium"
