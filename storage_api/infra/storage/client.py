"""Storage client protocol and data types.

This module defines the interface the upload lifecycle needs from an object
store: multipart session management, presigned part URLs and single-shot
streaming uploads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, Protocol, Sequence


class StorageBackendError(RuntimeError):
    """Raised when an object storage operation fails."""


class StorageBackendNotConfiguredError(Exception):
    """Raised when the storage backend settings are incomplete or unknown."""


@dataclass(frozen=True, slots=True)
class CompletedPart:
    """A part reported back by the client at completion time."""

    part_number: int
    etag: str


@dataclass(frozen=True, slots=True)
class MultipartUpload:
    """Result of opening a multipart upload session."""

    upload_id: str
    bucket: str
    object_key: str


@dataclass(frozen=True, slots=True)
class StoredObject:
    """Result of a single-shot upload."""

    bucket: str
    object_key: str


class StorageClient(Protocol):
    """Interface for object storage backends.

    Every method raises :class:`StorageBackendError` on failure. Retries, if
    any, are the implementation's business; callers never retry.
    """

    @property
    def bucket(self) -> str:
        """Bucket that new objects are written to."""
        ...

    def init_multipart_upload(
        self,
        *,
        object_key: str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> MultipartUpload:
        """Open a multipart upload session for ``object_key``."""
        ...

    def presign_upload_part(
        self,
        *,
        object_key: str,
        upload_id: str,
        part_number: int,
        expires_in: int,
    ) -> str:
        """Return a presigned PUT URL for one part (1-based, max 10000)."""
        ...

    def complete_multipart_upload(
        self,
        *,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> None:
        """Assemble the uploaded parts into the final object.

        The backend validates the ETags; a mismatch is a failure.
        """
        ...

    def abort_multipart_upload(self, *, object_key: str, upload_id: str) -> None:
        """Release a multipart session and any uncommitted part data."""
        ...

    def put_object(
        self,
        *,
        object_key: str,
        body: BinaryIO,
        content_type: str | None = None,
    ) -> StoredObject:
        """Stream ``body`` to ``object_key`` in a single operation."""
        ...
