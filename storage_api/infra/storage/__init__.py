"""Object storage abstraction layer.

A protocol-based abstraction over S3-compatible object stores.
"""

from .client import (
    CompletedPart,
    MultipartUpload,
    StorageBackendError,
    StorageBackendNotConfiguredError,
    StorageClient,
    StoredObject,
)

__all__ = [
    "CompletedPart",
    "MultipartUpload",
    "StorageBackendError",
    "StorageBackendNotConfiguredError",
    "StorageClient",
    "StoredObject",
]
