"""Tests for the remote document codec."""

import json

import pytest

from todo_sync.sync.blob import BLOB_VERSION, decode_blob, encode_blob
from todo_sync.sync.errors import BlobParseError
from todo_sync.todo import TaskRecord


class TestEncodeBlob:
    """Test the versioned document format."""

    def test_document_shape(self):
        content = encode_blob([TaskRecord(id=1, text="a")], exported_at=0)
        document = json.loads(content)

        assert document["version"] == BLOB_VERSION
        assert document["exportedAt"] == "1970-01-01T00:00:00+00:00"
        assert document["todos"][0]["text"] == "a"

    def test_decodes_what_it_encodes(self):
        records = [TaskRecord(id="x", text="a", tags=["t"], timestamp=1, last_modified=2)]

        assert decode_blob(encode_blob(records)) == records


class TestDecodeBlob:
    """Test accepted and rejected inputs."""

    def test_bare_array_accepted(self):
        records = decode_blob('[{"id": 1, "text": "legacy"}]')

        assert records[0].text == "legacy"

    def test_bytes_accepted(self):
        assert decode_blob(b'{"todos": []}') == []

    def test_empty_content_is_empty_collection(self):
        assert decode_blob("") == []
        assert decode_blob(b"   ") == []

    def test_unusable_records_skipped(self):
        records = decode_blob(
            '{"todos": [{"text": "no id"}, {"id": 2}, {"id": 0, "text": " zero "}, "junk", {"id": 0, "text": "again"}]}'
        )

        assert [(r.id, r.text) for r in records] == [(0, "zero")]

    def test_legacy_record_gets_creation_time(self):
        records = decode_blob('[{"id": 1, "text": "old", "lastModified": 5, "priority": 9}]')

        assert records[0].timestamp == 5
        assert records[0].priority == 3

    @pytest.mark.parametrize("content", [
        "not json",
        '{"items": []}',
        '{"todos": {"id": 1}}',
        "42",
        b"\xff\xfe",
    ])
    def test_malformed_documents_rejected(self, content):
        with pytest.raises(BlobParseError):
            decode_blob(content)
