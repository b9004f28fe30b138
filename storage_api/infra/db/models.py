import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storage_api.infra.db.base import Base, TimestampMixin

METADATA_JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class ObjectStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"


def _new_object_id() -> str:
    return str(uuid.uuid4())


class StorageObject(Base, TimestampMixin):
    """One logical uploaded file.

    The bytes live in external object storage; this row tracks where they are,
    who owns them and how far the upload has progressed.

    Fields
    -------
    id : Opaque UUID string, never reused.
    name : Original filename supplied by the uploader.
    size_bytes : Declared size; 0 for simple uploads until post-processing.
    mime_type : MIME type supplied by the uploader.
    storage_key : Object key in the bucket.
    storage_backend / bucket : Where the object is stored.
    status : pending, processing or ready.
    upload_session_id : Backend multipart upload id, set only while pending.
    part_size_bytes : Part size in force when the upload was initialized.
    uploaded_by : Owner user id.
    metadata_ : Free-form JSON map, stored in the ``metadata`` column.
    """

    __tablename__ = "storage_objects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_object_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_backend: Mapped[str] = mapped_column(String(32), nullable=False, default="s3")
    bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ObjectStatus.PENDING
    )
    upload_session_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    part_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uploaded_by: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", METADATA_JSON_TYPE, default=dict, nullable=False
    )

    __table_args__ = (
        Index("uq_storage_objects_storage_key", "storage_key", unique=True),
        Index("ix_storage_objects_uploaded_by", "uploaded_by"),
        Index("ix_storage_objects_status", "status"),
    )

    parts = relationship(
        "StorageObjectPart",
        back_populates="storage_object",
        cascade="all, delete-orphan",
        order_by="StorageObjectPart.part_number",
    )


class StorageObjectPart(Base, TimestampMixin):
    """A part reported for a multipart upload.

    ``(object_id, part_number)`` is the primary key, so re-reporting a part
    overwrites the row instead of adding one.
    """

    __tablename__ = "storage_object_parts"

    object_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("storage_objects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    part_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    etag: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    storage_object = relationship("StorageObject", back_populates="parts")


class IdempotencyRecord(Base):
    """Stored first response for an ``Idempotency-Key``.

    Fields
    -------
    key : Header value prefixed with the caller's user id, primary key.
    request_hash : Hash of method, path and payload, used to detect key reuse.
    status_code : HTTP status of the first execution.
    response_body : JSON-encoded response of the first execution.
    created_at / expires_at : Bookkeeping for cleanup.
    """

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (Index("ix_idempotency_records_expires_at", "expires_at"),)
