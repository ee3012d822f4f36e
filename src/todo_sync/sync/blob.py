"""Encoding and decoding of the remote collection document.

The remote copy is a single JSON document::

    {"version": "1.0", "exportedAt": "<ISO-8601>", "todos": [...]}

Older clients wrote a bare JSON array of records; readers accept both.
"""

import json
import logging
from typing import Any, Iterable, List, Optional

from ..todo import TaskRecord
from ..utils.datetime import ms_to_iso_string, now_ms
from ..utils.validation import clean_collection
from .errors import BlobParseError


logger = logging.getLogger(__name__)

BLOB_VERSION = "1.0"


def encode_blob(records: Iterable[TaskRecord], exported_at: Optional[int] = None) -> str:
    """Serialize a collection into the remote document format."""
    document = {
        "version": BLOB_VERSION,
        "exportedAt": ms_to_iso_string(exported_at if exported_at is not None else now_ms()),
        "todos": [record.to_dict() for record in records],
    }
    return json.dumps(document, indent=2, ensure_ascii=False)


def decode_document(document: Any) -> List[TaskRecord]:
    """Turn an already-parsed document into records.

    Raises:
        BlobParseError: if the document is neither a versioned object nor
            a bare array of records
    """
    if document is None:
        return []

    if isinstance(document, dict):
        if "todos" not in document:
            raise BlobParseError("Remote document has no 'todos' field")
        items = document["todos"]
        version = document.get("version")
        if version is not None and version != BLOB_VERSION:
            logger.warning(f"Remote document version {version!r} differs from {BLOB_VERSION!r}")
    elif isinstance(document, list):
        items = document
    else:
        raise BlobParseError(f"Unexpected remote document type: {type(document).__name__}")

    if not isinstance(items, list):
        raise BlobParseError("Remote 'todos' field is not a list")

    return clean_collection(items, "Remote document")


def decode_blob(content) -> List[TaskRecord]:
    """Parse remote document text (str or bytes) into records.

    Empty content is an empty collection.

    Raises:
        BlobParseError: if the content is not valid JSON or has the wrong shape
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BlobParseError(f"Remote document is not UTF-8: {e}") from e

    if content is None or not content.strip():
        return []

    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise BlobParseError(f"Remote document is not valid JSON: {e}") from e

    return decode_document(document)
