"""Remote stores holding the collection as a single opaque document.

The orchestrator only needs to read and replace one document. Concrete
stores map their failures onto the sync error hierarchy so that retry and
status handling are uniform:

- :class:`HttpBlobStore` talks to an HTTP drive API with bearer tokens
- :class:`FileBlobStore` keeps the document in a file, e.g. inside a
  folder managed by a desktop sync client
- :class:`MemoryBlobStore` keeps it in memory for tests and demos
"""

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional

import httpx

from ..todo import TaskRecord
from ..utils.datetime import datetime_to_ms, now_ms
from .blob import decode_blob, encode_blob
from .errors import (
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    QuotaExceededError,
    RateLimitError,
    RemoteStoreError,
)
from .models import RemoteSnapshot


logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]


class RemoteBlobStore(ABC):
    """Interface for the remote copy of the collection."""

    @abstractmethod
    async def read(self) -> RemoteSnapshot:
        """Read the remote collection.

        A missing document is an empty snapshot with ``exists=False``.

        Raises:
            NetworkError: on transient failures
            AuthenticationError: when credentials are missing or rejected
            BlobParseError: when the document cannot be decoded
        """
        pass

    @abstractmethod
    async def write(self, records: List[TaskRecord]) -> Optional[int]:
        """Replace the remote document; returns its new modification instant."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


class HttpBlobStore(RemoteBlobStore):
    """Remote document on an HTTP drive API (Graph-style item paths).

    Metadata is read from ``{base_url}/{blob_path}`` and content from
    ``{base_url}/{blob_path}:/content``. A token is requested from
    ``token_provider`` for every call; nothing long-lived is cached.
    """

    DEFAULT_BASE_URL = "https://graph.microsoft.com/v1.0"
    DEFAULT_BLOB_PATH = "me/drive/special/approot:/todos.json"

    def __init__(self, token_provider: TokenProvider,
                 base_url: str = DEFAULT_BASE_URL,
                 blob_path: str = DEFAULT_BLOB_PATH,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.blob_path = blob_path.strip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @property
    def item_url(self) -> str:
        return f"{self.base_url}/{self.blob_path}"

    @property
    def content_url(self) -> str:
        return f"{self.item_url}:/content"

    async def _headers(self) -> dict:
        token = await self.token_provider()
        if not token:
            raise AuthenticationError("No access token available")
        return {"Authorization": f"Bearer {token}"}

    async def _make_request(self, method: str, url: str, content: Optional[str] = None,
                            allow_not_found: bool = False) -> Optional[httpx.Response]:
        """Make an HTTP request and map failures to sync errors.

        Returns:
            The response, or None for a 404 when ``allow_not_found`` is set

        Raises:
            AuthenticationError: on 401/403
            RateLimitError: on 429
            QuotaExceededError: on 507
            NetworkError: on 5xx, timeouts and transport errors
            RemoteStoreError: on other 4xx responses
        """
        headers = await self._headers()
        if content is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = await self.client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException:
            raise NetworkError("Remote store request timed out")
        except httpx.RequestError as e:
            raise NetworkError(f"Remote store request failed: {e}")

        status = response.status_code
        if status == 404 and allow_not_found:
            return None
        if status in (401, 403):
            raise AuthenticationError(f"Remote store rejected credentials ({status})")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Remote store rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status == 507:
            raise QuotaExceededError("Remote storage quota exceeded")
        if status >= 500:
            raise NetworkError(f"Remote store error {status}")
        if status >= 400:
            raise RemoteStoreError(f"Remote store error {status}: {response.text}")
        return response

    @staticmethod
    def _parse_modified(response: httpx.Response) -> Optional[int]:
        try:
            payload = response.json()
        except ValueError:
            return None
        value = payload.get("lastModifiedDateTime") if isinstance(payload, dict) else None
        if not value:
            return None
        try:
            return datetime_to_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None

    async def read(self) -> RemoteSnapshot:
        metadata = await self._make_request("GET", self.item_url, allow_not_found=True)
        if metadata is None:
            self.logger.info("Remote document not found; treating as empty collection")
            return RemoteSnapshot(records=[], modified=None, exists=False)

        response = await self._make_request("GET", self.content_url, allow_not_found=True)
        if response is None:
            return RemoteSnapshot(records=[], modified=None, exists=False)

        records = decode_blob(response.content)
        return RemoteSnapshot(records=records, modified=self._parse_modified(metadata))

    async def write(self, records: List[TaskRecord]) -> Optional[int]:
        response = await self._make_request("PUT", self.content_url, content=encode_blob(records))
        self.logger.debug(f"Wrote {len(records)} records to {self.item_url}")
        return self._parse_modified(response)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class FileBlobStore(RemoteBlobStore):
    """Remote document kept in a JSON file, replaced atomically."""

    def __init__(self, path):
        self.path = Path(os.path.expanduser(str(path)))
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    def _read_sync(self) -> RemoteSnapshot:
        if not self.path.exists():
            return RemoteSnapshot(records=[], modified=None, exists=False)
        try:
            content = self.path.read_bytes()
            modified = int(self.path.stat().st_mtime * 1000)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot read {self.path}: {e}") from e
        except OSError as e:
            raise NetworkError(f"Cannot read {self.path}: {e}") from e
        return RemoteSnapshot(records=decode_blob(content), modified=modified)

    def _write_sync(self, content: str) -> int:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            return int(self.path.stat().st_mtime * 1000)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot write {self.path}: {e}") from e
        except OSError as e:
            raise NetworkError(f"Cannot write {self.path}: {e}") from e

    async def read(self) -> RemoteSnapshot:
        return await asyncio.to_thread(self._read_sync)

    async def write(self, records: List[TaskRecord]) -> Optional[int]:
        modified = await asyncio.to_thread(self._write_sync, encode_blob(records))
        self.logger.debug(f"Wrote {len(records)} records to {self.path}")
        return modified


class MemoryBlobStore(RemoteBlobStore):
    """In-process remote copy; holds the encoded document like a real store."""

    def __init__(self, records: Optional[Iterable[TaskRecord]] = None,
                 clock: Callable[[], int] = now_ms):
        self.clock = clock
        self.content: Optional[str] = None
        self.modified: Optional[int] = None
        self.write_count = 0
        if records is not None:
            self.content = encode_blob(list(records))
            self.modified = self.clock()

    async def read(self) -> RemoteSnapshot:
        if self.content is None:
            return RemoteSnapshot(records=[], modified=None, exists=False)
        return RemoteSnapshot(records=decode_blob(self.content), modified=self.modified)

    async def write(self, records: List[TaskRecord]) -> Optional[int]:
        self.content = encode_blob(records)
        self.modified = self.clock()
        self.write_count += 1
        return self.modified
