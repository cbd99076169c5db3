"""
File uploads and the object store.

Product images, payment proofs and dispatch receipts are written to an
object store before the status change that references them is committed.
Paths combine the transaction id, a millisecond timestamp and a random
token so that a retried upload never collides with an earlier attempt.
"""

import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
MAX_FILENAME_LENGTH = 100


@dataclass
class FileUpload:
    """A file supplied by the caller."""

    filename: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


def safe_filename(filename: str) -> str:
    """Reduce a client-supplied name to a safe basename."""
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    if not name:
        return "file"
    if len(name) > MAX_FILENAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and len(ext) < 10:
            name = stem[: MAX_FILENAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            name = name[:MAX_FILENAME_LENGTH]
    return name


def _now_ms() -> int:
    return int(time.time() * 1000)


def _object_name(filename: str, now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else _now_ms()
    return f"{stamp}-{uuid.uuid4().hex[:8]}-{safe_filename(filename)}"


def product_image_path(transaction_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    return f"{transaction_id}/{_object_name(filename, now_ms)}"


def payment_proof_path(transaction_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    return f"payments/{transaction_id}/{_object_name(filename, now_ms)}"


def dispatch_receipt_path(transaction_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    return f"{transaction_id}/{_object_name(filename, now_ms)}"


class ObjectStore(Protocol):
    """Protocol for file storage backends."""

    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        """Store a file and return its stable public URL.

        Raises StorageUnavailableError if the backend fails.
        """
        ...


class InMemoryObjectStore:
    """In-memory object store for testing and local development."""

    def __init__(self, base_url: str = "memory://"):
        self.base_url = base_url
        self._objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        with self._lock:
            self._objects[(bucket, path)] = (content, content_type)
        logger.debug(f"Stored object | bucket={bucket} | path={path} | size={len(content)}")
        return self.public_url(bucket, path)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}{bucket}/{path}"

    def get(self, bucket: str, path: str) -> Optional[bytes]:
        """Get stored content, or None."""
        entry = self._objects.get((bucket, path))
        return entry[0] if entry else None

    def list_paths(self, bucket: str) -> list:
        return sorted(path for (b, path) in self._objects if b == bucket)

    def __len__(self) -> int:
        return len(self._objects)
