"""Tests for the remote document stores."""

import json

import httpx
import pytest

from todo_sync.sync.blob import encode_blob
from todo_sync.sync.blob_store import FileBlobStore, HttpBlobStore, MemoryBlobStore
from todo_sync.sync.errors import (
    AuthenticationError,
    BlobParseError,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
    RemoteStoreError,
)
from todo_sync.todo import TaskRecord


BASE_URL = "https://drive.test/v1.0"


async def token():
    return "secret-token"


def make_store(handler, token_provider=token):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpBlobStore(token_provider, base_url=BASE_URL, blob_path="me/drive/todos.json", client=client)


class TestHttpBlobStore:
    """Test the HTTP store against a mocked transport."""

    def test_urls(self):
        store = make_store(lambda request: httpx.Response(200))

        assert store.item_url == f"{BASE_URL}/me/drive/todos.json"
        assert store.content_url == f"{BASE_URL}/me/drive/todos.json:/content"

    async def test_read_returns_records_and_modified(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path.endswith(":/content"):
                return httpx.Response(200, content=encode_blob([TaskRecord(id=1, text="remote")]))
            return httpx.Response(200, json={"lastModifiedDateTime": "2024-01-15T12:00:00Z"})

        snapshot = await make_store(handler).read()

        assert [r.text for r in snapshot.records] == ["remote"]
        assert snapshot.modified == 1705320000000
        assert snapshot.exists
        assert all(r.headers["Authorization"] == "Bearer secret-token" for r in seen)

    async def test_missing_document_is_empty(self):
        snapshot = await make_store(lambda request: httpx.Response(404)).read()

        assert snapshot.records == []
        assert snapshot.exists is False

    async def test_write_puts_document(self):
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"lastModifiedDateTime": "2024-01-15T12:00:00+00:00"})

        modified = await make_store(handler).write([TaskRecord(id=1, text="a")])

        assert captured["method"] == "PUT"
        assert captured["url"].endswith(":/content")
        assert captured["body"]["todos"][0]["id"] == 1
        assert modified == 1705320000000

    @pytest.mark.parametrize("status, error", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (500, NetworkError),
        (503, NetworkError),
        (507, QuotaExceededError),
        (400, RemoteStoreError),
        (409, RemoteStoreError),
    ])
    async def test_status_mapping(self, status, error):
        store = make_store(lambda request: httpx.Response(status))

        with pytest.raises(error):
            await store.write([])

    async def test_rate_limit_carries_retry_after(self):
        store = make_store(lambda request: httpx.Response(429, headers={"Retry-After": "7"}))

        with pytest.raises(RateLimitError) as exc_info:
            await store.read()
        assert exc_info.value.retry_after == 7.0

    async def test_transport_failure_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError):
            await make_store(handler).read()

    async def test_missing_token_is_auth_error(self):
        async def no_token():
            return None

        store = make_store(lambda request: httpx.Response(200), token_provider=no_token)

        with pytest.raises(AuthenticationError):
            await store.read()

    async def test_unreadable_content_is_parse_error(self):
        def handler(request):
            if request.url.path.endswith(":/content"):
                return httpx.Response(200, content=b"<html>oops</html>")
            return httpx.Response(200, json={})

        with pytest.raises(BlobParseError):
            await make_store(handler).read()


class TestFileBlobStore:
    """Test the file-backed store."""

    async def test_missing_file_is_empty(self, tmp_path):
        snapshot = await FileBlobStore(tmp_path / "todos.json").read()

        assert snapshot.records == []
        assert snapshot.exists is False

    async def test_write_then_read(self, tmp_path):
        store = FileBlobStore(tmp_path / "nested" / "todos.json")

        modified = await store.write([TaskRecord(id="a", text="from file")])
        snapshot = await store.read()

        assert [r.text for r in snapshot.records] == ["from file"]
        assert snapshot.modified == modified
        assert not list((tmp_path / "nested").glob("*.tmp"))

    async def test_corrupt_file_is_parse_error(self, tmp_path):
        path = tmp_path / "todos.json"
        path.write_text("{broken")

        with pytest.raises(BlobParseError):
            await FileBlobStore(path).read()


class TestMemoryBlobStore:
    """Test the in-memory store used by tests and demos."""

    async def test_counts_writes(self):
        store = MemoryBlobStore(clock=lambda: 42)

        assert (await store.read()).exists is False
        assert await store.write([TaskRecord(id=1, text="a")]) == 42
        assert store.write_count == 1
        assert [r.id for r in (await store.read()).records] == [1]
