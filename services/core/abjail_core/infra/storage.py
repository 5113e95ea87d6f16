"""Local filesystem blob storage for evidence images and screenshots.

Blobs are addressed by references of the form ``blob://<bucket>/<path>``
which are what submissions store. Browsers receive short-lived signed URLs
(HMAC over bucket, path and expiry) served by the ``/blobs`` route.

Usage:
    storage = LocalBlobStorage(root="/var/lib/abjail/blobs", secret_key="...")

    ref = storage.put("incoming", data, "image/png")
    data = storage.get(ref)
    url = storage.sign(ref, ttl_seconds=3600, base_url="https://abjail.org")
"""

import base64
import hashlib
import hmac
import mimetypes
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode


BLOB_SCHEME = "blob://"

MIME_TO_EXTENSION = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "application/pdf": ".pdf",
}


# =============================================================================
# EXCEPTIONS
# =============================================================================


class StorageError(Exception):
    """Base exception for blob storage operations."""
    pass


class BlobNotFoundError(StorageError):
    """Raised when a referenced blob does not exist."""
    pass


class InvalidBlobReferenceError(StorageError):
    """Raised when a reference cannot be parsed or escapes the bucket."""
    pass


# =============================================================================
# HELPERS
# =============================================================================


def parse_ref(ref: str) -> tuple[str, str]:
    """Split a blob reference into (bucket, path).

    Raises:
        InvalidBlobReferenceError: If the reference is malformed.
    """
    if not ref or not ref.startswith(BLOB_SCHEME):
        raise InvalidBlobReferenceError(f"Not a blob reference: {ref!r}")
    remainder = ref[len(BLOB_SCHEME):]
    bucket, _, path = remainder.partition("/")
    if not bucket or not path:
        raise InvalidBlobReferenceError(f"Incomplete blob reference: {ref!r}")
    return bucket, path


def is_blob_ref(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(BLOB_SCHEME)


def to_data_url(data: bytes, content_type: str) -> str:
    """Encode bytes as a base64 data URL."""
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def parse_data_url(data_url: str) -> tuple[bytes, str]:
    """Decode a base64 data URL into (bytes, content_type).

    Raises:
        ValueError: If the value is not a base64 data URL.
    """
    if not data_url.startswith("data:") or ";base64," not in data_url:
        raise ValueError("Expected a base64 data URL")
    header, _, payload = data_url.partition(";base64,")
    content_type = header[len("data:"):] or "application/octet-stream"
    try:
        data = base64.b64decode(payload, validate=False)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    if not data:
        raise ValueError("Empty data URL payload")
    return data, content_type


# =============================================================================
# STORAGE
# =============================================================================


class LocalBlobStorage:
    """Blob storage backed by a local directory tree."""

    def __init__(self, root: str, secret_key: str):
        """Initialize the storage.

        Args:
            root: Root directory; buckets are subdirectories.
            secret_key: Key used to sign URLs.
        """
        self.root = Path(root)
        self._secret = secret_key.encode("utf-8")

    def put(
        self,
        bucket: str,
        data: bytes,
        content_type: str,
        key: Optional[str] = None,
    ) -> str:
        """Store bytes and return their blob reference."""
        if not data:
            raise StorageError("Cannot store empty blob")
        if key is None:
            now = datetime.utcnow()
            extension = MIME_TO_EXTENSION.get(content_type) or (
                mimetypes.guess_extension(content_type) or ".bin"
            )
            key = f"{now.year:04d}/{now.month:02d}/{now.day:02d}/{uuid.uuid4().hex}{extension}"

        path = self._resolve(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to write blob: {e}") from e
        return f"{BLOB_SCHEME}{bucket}/{key}"

    def get(self, ref: str) -> bytes:
        """Read the bytes for a blob reference."""
        bucket, key = parse_ref(ref)
        path = self._resolve(bucket, key)
        if not path.is_file():
            raise BlobNotFoundError(ref)
        return path.read_bytes()

    def content_type(self, ref: str) -> str:
        _, key = parse_ref(ref)
        guessed, _ = mimetypes.guess_type(key)
        return guessed or "application/octet-stream"

    def data_url(self, ref: str) -> str:
        """Load a blob and return it inline as a data URL."""
        return to_data_url(self.get(ref), self.content_type(ref))

    def sign(
        self,
        ref: str,
        ttl_seconds: int,
        base_url: str = "",
        now: Optional[float] = None,
    ) -> str:
        """Build a signed download URL for a blob reference."""
        bucket, key = parse_ref(ref)
        expires = int((now if now is not None else time.time()) + ttl_seconds)
        signature = self._signature(bucket, key, expires)
        query = urlencode({"expires": expires, "sig": signature})
        return f"{base_url.rstrip('/')}/blobs/{bucket}/{key}?{query}"

    def verify(
        self,
        bucket: str,
        key: str,
        expires: int,
        signature: str,
        now: Optional[float] = None,
    ) -> bool:
        """Check a signature produced by sign()."""
        current = now if now is not None else time.time()
        if expires < current:
            return False
        expected = self._signature(bucket, key, expires)
        return hmac.compare_digest(expected, signature)

    def _signature(self, bucket: str, key: str, expires: int) -> str:
        message = f"{bucket}/{key}:{expires}".encode("utf-8")
        digest = hmac.new(self._secret, message, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def _resolve(self, bucket: str, key: str) -> Path:
        bucket_root = (self.root / bucket).resolve()
        path = (bucket_root / key).resolve()
        if bucket_root not in path.parents:
            raise InvalidBlobReferenceError(f"Path escapes bucket: {bucket}/{key}")
        return path
