r"""Upload lifecycle for storage objects.

This module owns the state machine of an uploaded object:

    init_upload -> pending -> complete_upload -> processing
                          \-> abort_upload    -> (deleted)
    simple_upload -> processing

Bytes never pass through the service for multipart uploads; clients PUT parts
straight to presigned URLs and report them back. Every operation re-reads the
object row, so concurrent requests coordinate only through the database and
the storage backend.
"""

from __future__ import annotations

import io
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Iterator, Sequence

from sqlalchemy.orm import Session

from storage_api.common.config import Settings, get_settings
from storage_api.domain import (
    INITIAL_PRESIGNED_BATCH,
    MAX_PART_COUNT,
    MAX_PART_URLS_PER_REQUEST,
    MIN_PART_SIZE_BYTES,
)
from storage_api.domain.repositories.object_repository import (
    PartRecord,
    StorageObjectRepository,
)
from storage_api.infra.db.models import ObjectStatus, StorageObject
from storage_api.infra.events.publisher import (
    EventPublisher,
    EventPublishError,
    ObjectUploadedEvent,
)
from storage_api.infra.observability.metrics import UPLOAD_OPERATIONS
from storage_api.infra.storage.client import (
    CompletedPart,
    StorageBackendError,
    StorageClient,
)
from storage_api.services.base import BaseService, ServiceError

logger = logging.getLogger("storage.objects")

_EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9_-]{1,16}$")


class ObjectNotFoundError(ServiceError):
    """Raised when the referenced storage object does not exist."""


class ObjectAccessDeniedError(ServiceError):
    """Raised when the caller does not own the storage object."""


class InvalidUploadOperationError(ServiceError):
    """Raised when the object's upload state does not allow the operation."""


class UploadValidationError(ServiceError):
    """Raised when upload parameters are malformed or out of range."""


class UploadConfigurationError(ServiceError):
    """Raised when the configured upload settings are unusable."""


@dataclass(frozen=True, slots=True)
class InitUploadData:
    name: str
    size_bytes: int
    mime_type: str


@dataclass(frozen=True, slots=True)
class PartUrl:
    part_number: int
    url: str


@dataclass(frozen=True, slots=True)
class InitUploadResult:
    storage_object: StorageObject
    upload_session_id: str
    part_size_bytes: int
    total_parts: int
    presigned_urls: list[PartUrl]
    expires_in: int


@dataclass(frozen=True, slots=True)
class PartUrlBatch:
    upload_session_id: str
    urls: list[PartUrl]
    expires_in: int


@dataclass(frozen=True, slots=True)
class UploadStatus:
    object_id: str
    status: str
    uploaded_parts: list[int]
    total_parts: int
    uploaded_bytes: int
    total_bytes: int


@dataclass(frozen=True, slots=True)
class SimpleUploadData:
    file_name: str
    mime_type: str
    body: BinaryIO


def total_parts_for(size_bytes: int, part_size_bytes: int) -> int:
    """Number of parts needed for ``size_bytes``; 0 for an empty object."""
    return -(-size_bytes // part_size_bytes)


def _sanitize_name(name: str) -> str:
    cleaned = name.strip().replace("\\", "_").replace("/", "_")
    return cleaned or "file"


def _extension(name: str) -> str:
    suffix = os.path.splitext(name)[1]
    return suffix if _EXTENSION_PATTERN.match(suffix) else ""


def build_storage_key(prefix: str, name: str, *, now_ms: int | None = None) -> str:
    """Build ``<prefix><epoch ms>/<random hex><extension>``.

    The random component makes keys unique across concurrent initializations;
    the timestamp keeps keys roughly ordered for operators browsing the bucket.
    """
    prefix = (prefix or "").lstrip("/")
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    millis = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{prefix}{millis}/{uuid.uuid4().hex}{_extension(name)}"


@contextmanager
def _tracked(operation: str) -> Iterator[None]:
    try:
        yield
    except ServiceError:
        UPLOAD_OPERATIONS.labels(operation, "rejected").inc()
        raise
    except StorageBackendError:
        UPLOAD_OPERATIONS.labels(operation, "backend_error").inc()
        raise
    except Exception:
        UPLOAD_OPERATIONS.labels(operation, "error").inc()
        raise
    UPLOAD_OPERATIONS.labels(operation, "ok").inc()


class ObjectService(BaseService):
    """Application service for the storage object upload lifecycle.

    Collaborators are passed in explicitly: the database session, the storage
    backend and the event publisher. Nothing is cached between calls.
    """

    def __init__(
        self,
        session: Session,
        *,
        storage_client: StorageClient,
        event_publisher: EventPublisher,
        settings: Settings | None = None,
        repository: StorageObjectRepository | None = None,
    ) -> None:
        super().__init__(session)
        self._storage = storage_client
        self._events = event_publisher
        self._settings = settings or get_settings()
        self._repo = repository or StorageObjectRepository(session)

    def init_upload(self, data: InitUploadData, *, user_id: str) -> InitUploadResult:
        """Create a pending object and open a multipart upload session.

        Args:
            data: Declared name, size and MIME type of the file.
            user_id: The uploading user, who becomes the owner.

        Returns:
            InitUploadResult with presigned URLs for the first parts.

        Raises:
            UploadConfigurationError: If the configured part size is too small.
            UploadValidationError: If the size is negative or needs too many parts.
            StorageBackendError: If the backend cannot open the session or sign URLs.
        """
        with _tracked("init"):
            part_size = self._configured_part_size()
            user = self._ensure_user(user_id)

            size = data.size_bytes
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise UploadValidationError("size must be a non-negative integer")
            total_parts = total_parts_for(size, part_size)
            if total_parts > MAX_PART_COUNT:
                raise UploadValidationError(
                    f"File too large for multipart upload: needs {total_parts} parts, "
                    f"the limit is {MAX_PART_COUNT}"
                )

            name = _sanitize_name(data.name)
            mime_type = (data.mime_type or "").strip() or "application/octet-stream"
            storage_key = build_storage_key(self._settings.STORAGE_KEY_PREFIX, name)
            expires_in = int(self._settings.STORAGE_PRESIGN_EXPIRES_SECONDS)

            upload = self._storage.init_multipart_upload(
                object_key=storage_key,
                content_type=mime_type,
                metadata={"uploaded-by": user},
            )

            try:
                urls = self._presign(
                    storage_key,
                    upload.upload_id,
                    range(1, min(INITIAL_PRESIGNED_BATCH, total_parts) + 1),
                    expires_in,
                )
                storage_object = StorageObject(
                    name=name,
                    size_bytes=size,
                    mime_type=mime_type,
                    storage_key=storage_key,
                    storage_backend=self._settings.STORAGE_BACKEND,
                    bucket=upload.bucket,
                    status=ObjectStatus.PENDING,
                    upload_session_id=upload.upload_id,
                    part_size_bytes=part_size,
                    uploaded_by=user,
                    metadata_={},
                )
                self._repo.add(storage_object)
                self._commit()
            except Exception:
                self._release_session(storage_key, upload.upload_id)
                raise

            self.session.refresh(storage_object)
            logger.info(
                "upload_initialized object_id=%s total_parts=%s",
                storage_object.id,
                total_parts,
                extra={
                    "extra": {
                        "object_id": storage_object.id,
                        "user_id": user,
                        "size_bytes": size,
                        "total_parts": total_parts,
                        "storage_key": storage_key,
                    }
                },
            )
            return InitUploadResult(
                storage_object=storage_object,
                upload_session_id=upload.upload_id,
                part_size_bytes=part_size,
                total_parts=total_parts,
                presigned_urls=urls,
                expires_in=expires_in,
            )

    def sign_part_urls(
        self,
        object_id: str,
        part_numbers: Sequence[int],
        *,
        user_id: str,
    ) -> PartUrlBatch:
        """Presign upload URLs for further parts of a pending upload."""
        with _tracked("sign"):
            storage_object = self._get_owned(object_id, user_id)
            upload_session_id = self._require_open_session(storage_object)

            if len(part_numbers) > MAX_PART_URLS_PER_REQUEST:
                raise UploadValidationError(
                    f"Cannot request more than {MAX_PART_URLS_PER_REQUEST} part URLs at once"
                )
            unique_parts = list(dict.fromkeys(int(pn) for pn in part_numbers))
            total_parts = _frozen_total_parts(storage_object)
            for part_number in unique_parts:
                _check_part_number(part_number, total_parts)

            expires_in = int(self._settings.STORAGE_PRESIGN_EXPIRES_SECONDS)
            urls = self._presign(
                storage_object.storage_key, upload_session_id, unique_parts, expires_in
            )
            return PartUrlBatch(
                upload_session_id=upload_session_id, urls=urls, expires_in=expires_in
            )

    def record_part(
        self,
        object_id: str,
        part: PartRecord,
        *,
        user_id: str,
    ) -> UploadStatus:
        """Record one uploaded part so progress survives client restarts."""
        with _tracked("record_part"):
            storage_object = self._get_owned(object_id, user_id)
            self._require_open_session(storage_object)
            _check_part_number(part.part_number, _frozen_total_parts(storage_object))
            if not part.etag or not part.etag.strip():
                raise UploadValidationError("eTag must not be empty")
            if part.size_bytes is not None and part.size_bytes < 0:
                raise UploadValidationError("size must be a non-negative integer")

            self._repo.upsert_parts(storage_object.id, [part])
            self._commit()
            return self._status_of(storage_object)

    def get_upload_status(self, object_id: str, *, user_id: str) -> UploadStatus:
        """Report upload progress to the owner.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ObjectAccessDeniedError: If the caller is not the owner.
        """
        with _tracked("status"):
            storage_object = self._get_owned(object_id, user_id)
            return self._status_of(storage_object)

    def complete_upload(
        self,
        object_id: str,
        parts: Sequence[CompletedPart],
        *,
        user_id: str,
    ) -> StorageObject:
        """Assemble the uploaded parts and hand the object to post-processing.

        The submitted parts are recorded first, so a retry after a backend
        failure sees the same part set. The object only moves to
        ``processing`` once the backend accepted the assembly.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ObjectAccessDeniedError: If the caller is not the owner.
            InvalidUploadOperationError: If no multipart session is open.
            UploadValidationError: If the part list is malformed.
            StorageBackendError: If the backend rejects the assembly.
        """
        with _tracked("complete"):
            storage_object = self._get_owned(object_id, user_id)
            upload_session_id = self._require_open_session(storage_object)
            ordered = _validate_completed_parts(
                parts, storage_object.size_bytes, _frozen_total_parts(storage_object)
            )

            if ordered:
                self._repo.upsert_parts(
                    storage_object.id,
                    [PartRecord(part_number=p.part_number, etag=p.etag) for p in ordered],
                )
                self._commit()
                self._storage.complete_multipart_upload(
                    object_key=storage_object.storage_key,
                    upload_id=upload_session_id,
                    parts=ordered,
                )
            else:
                # zero-byte object: nothing to assemble, write it directly
                self._storage.put_object(
                    object_key=storage_object.storage_key,
                    body=io.BytesIO(b""),
                    content_type=storage_object.mime_type,
                )
                self._storage.abort_multipart_upload(
                    object_key=storage_object.storage_key,
                    upload_id=upload_session_id,
                )

            storage_object.status = ObjectStatus.PROCESSING
            storage_object.upload_session_id = None
            storage_object.metadata_ = {
                **dict(storage_object.metadata_ or {}),
                "multipart": {
                    "upload_session_id": upload_session_id,
                    "part_count": len(ordered),
                    "completed_at": datetime.now(timezone.utc).isoformat(),
                },
            }
            storage_key = storage_object.storage_key
            try:
                self._commit()
            except Exception:
                # backend already assembled the object; the row still points at a spent session
                logger.error(
                    "upload_completion_not_persisted object_id=%s upload_session_id=%s storage_key=%s",
                    object_id,
                    upload_session_id,
                    storage_key,
                    exc_info=True,
                    extra={
                        "extra": {
                            "object_id": object_id,
                            "upload_session_id": upload_session_id,
                            "storage_key": storage_key,
                        }
                    },
                )
                raise
            self.session.refresh(storage_object)

            logger.info(
                "upload_completed object_id=%s parts=%s",
                storage_object.id,
                len(ordered),
                extra={
                    "extra": {
                        "object_id": storage_object.id,
                        "user_id": storage_object.uploaded_by,
                        "part_count": len(ordered),
                    }
                },
            )
            self._announce_uploaded(storage_object)
            return storage_object

    def abort_upload(self, object_id: str, *, user_id: str) -> None:
        """Release the multipart session, then delete the object and its parts.

        If the backend refuses to abort, the object row is left in place so the
        session can still be found and retried.
        """
        with _tracked("abort"):
            storage_object = self._get_owned(object_id, user_id)
            upload_session_id = self._require_open_session(storage_object)

            self._storage.abort_multipart_upload(
                object_key=storage_object.storage_key,
                upload_id=upload_session_id,
            )

            self._repo.delete(storage_object)
            self._commit()
            logger.info(
                "upload_aborted object_id=%s",
                object_id,
                extra={"extra": {"object_id": object_id, "user_id": user_id}},
            )

    def simple_upload(self, data: SimpleUploadData, *, user_id: str) -> StorageObject:
        """Stream a small file to storage in one shot.

        The size is not known until the stream is consumed, so the object is
        stored with size 0 and left to post-processing to correct.
        """
        with _tracked("simple"):
            user = self._ensure_user(user_id)
            name = _sanitize_name(data.file_name)
            mime_type = (data.mime_type or "").strip() or "application/octet-stream"
            storage_key = build_storage_key(self._settings.STORAGE_KEY_PREFIX, name)

            stored = self._storage.put_object(
                object_key=storage_key,
                body=data.body,
                content_type=mime_type,
            )

            storage_object = StorageObject(
                name=name,
                size_bytes=0,
                mime_type=mime_type,
                storage_key=storage_key,
                storage_backend=self._settings.STORAGE_BACKEND,
                bucket=stored.bucket,
                status=ObjectStatus.PROCESSING,
                upload_session_id=None,
                part_size_bytes=None,
                uploaded_by=user,
                metadata_={},
            )
            self._repo.add(storage_object)
            self._commit()
            self.session.refresh(storage_object)

            logger.info(
                "simple_upload_stored object_id=%s",
                storage_object.id,
                extra={
                    "extra": {
                        "object_id": storage_object.id,
                        "user_id": user,
                        "storage_key": storage_key,
                    }
                },
            )
            self._announce_uploaded(storage_object)
            return storage_object

    def _configured_part_size(self) -> int:
        part_size = int(self._settings.STORAGE_PART_SIZE_BYTES)
        if part_size < MIN_PART_SIZE_BYTES:
            raise UploadConfigurationError(
                f"Part size must be at least {MIN_PART_SIZE_BYTES} bytes "
                f"(configured: {part_size})"
            )
        return part_size

    def _get_owned(self, object_id: str, user_id: str) -> StorageObject:
        user = self._ensure_user(user_id)
        storage_object = self._repo.get(object_id)
        if storage_object is None:
            raise ObjectNotFoundError("Upload not found")
        if storage_object.uploaded_by != user:
            raise ObjectAccessDeniedError("You do not own this upload")
        return storage_object

    @staticmethod
    def _require_open_session(storage_object: StorageObject) -> str:
        if not storage_object.upload_session_id:
            raise InvalidUploadOperationError(
                "Upload has no open multipart session"
            )
        return storage_object.upload_session_id

    def _status_of(self, storage_object: StorageObject) -> UploadStatus:
        progress = self._repo.part_progress(storage_object.id)
        return UploadStatus(
            object_id=storage_object.id,
            status=storage_object.status,
            uploaded_parts=progress.part_numbers,
            total_parts=_frozen_total_parts(storage_object),
            uploaded_bytes=progress.uploaded_bytes,
            total_bytes=int(storage_object.size_bytes),
        )

    def _presign(
        self,
        storage_key: str,
        upload_session_id: str,
        part_numbers: Sequence[int] | range,
        expires_in: int,
    ) -> list[PartUrl]:
        # all-or-nothing: the first failure propagates
        return [
            PartUrl(
                part_number=part_number,
                url=self._storage.presign_upload_part(
                    object_key=storage_key,
                    upload_id=upload_session_id,
                    part_number=part_number,
                    expires_in=expires_in,
                ),
            )
            for part_number in part_numbers
        ]

    def _release_session(self, storage_key: str, upload_session_id: str) -> None:
        try:
            self._storage.abort_multipart_upload(
                object_key=storage_key, upload_id=upload_session_id
            )
        except StorageBackendError:
            logger.warning(
                "multipart_session_leaked storage_key=%s upload_session_id=%s",
                storage_key,
                upload_session_id,
                exc_info=True,
            )

    def _announce_uploaded(self, storage_object: StorageObject) -> None:
        event = ObjectUploadedEvent(
            object_id=storage_object.id,
            user_id=storage_object.uploaded_by,
            storage_key=storage_object.storage_key,
            mime_type=storage_object.mime_type,
            bucket=storage_object.bucket,
        )
        try:
            self._events.publish(event)
        except EventPublishError:
            # the state change is committed; post-processing can be replayed from the row
            logger.exception(
                "event_publish_failed name=%s object_id=%s",
                event.name,
                storage_object.id,
            )


def _frozen_total_parts(storage_object: StorageObject) -> int:
    """Part count from the part size stored at init; 0 for simple uploads."""
    part_size = storage_object.part_size_bytes
    if not part_size:
        return 0
    return total_parts_for(int(storage_object.size_bytes), int(part_size))


def _check_part_number(part_number: int, total_parts: int = 0) -> None:
    if part_number < 1 or part_number > MAX_PART_COUNT:
        raise UploadValidationError(
            f"part_number must be between 1 and {MAX_PART_COUNT}"
        )
    if total_parts and part_number > total_parts:
        raise UploadValidationError(
            f"part_number {part_number} is beyond the last part ({total_parts})"
        )


def _validate_completed_parts(
    parts: Sequence[CompletedPart], declared_size: int, total_parts: int = 0
) -> list[CompletedPart]:
    if not parts:
        if declared_size:
            raise UploadValidationError("parts list cannot be empty")
        return []

    seen: set[int] = set()
    for part in parts:
        _check_part_number(part.part_number, total_parts)
        if part.part_number in seen:
            raise UploadValidationError(
                f"part_number {part.part_number} is listed more than once"
            )
        if not part.etag or not part.etag.strip():
            raise UploadValidationError("eTag must not be empty")
        seen.add(part.part_number)
    return sorted(parts, key=lambda p: p.part_number)
