"""Pydantic schemas for the storage object endpoints.

Field names are snake_case in Python and camelCase on the wire. Every success
payload is wrapped as ``{"data": ...}`` through ``Envelope``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Envelope(BaseModel, Generic[T]):
    """Success response wrapper."""

    data: T


class InitUploadIn(CamelModel):
    """Request body for opening a multipart upload."""

    name: str = Field(min_length=1, max_length=255)
    size: int = Field(ge=0, description="Declared size of the file in bytes")
    mime_type: str = Field(default="application/octet-stream", max_length=255)


class PartUrlOut(CamelModel):
    part_number: int
    url: str


class InitUploadOut(CamelModel):
    object_id: str
    upload_session_id: str
    part_size: int
    total_parts: int
    presigned_urls: list[PartUrlOut]
    expires_in: int


class UploadStatusOut(CamelModel):
    object_id: str
    status: str
    uploaded_parts: list[int]
    total_parts: int
    uploaded_bytes: int
    total_bytes: int


class PartUrlsIn(CamelModel):
    """Request body for presigning further part URLs."""

    part_numbers: list[int] = Field(min_length=1)


class PartUrlsOut(CamelModel):
    upload_session_id: str
    urls: list[PartUrlOut]
    expires_in: int


class RecordPartIn(CamelModel):
    """A part the client finished uploading."""

    etag: str = Field(alias="eTag", min_length=1, max_length=255)
    size: int | None = Field(default=None, ge=0)


class CompletedPartIn(CamelModel):
    part_number: int = Field(ge=1)
    etag: str = Field(alias="eTag", min_length=1, max_length=255)


class CompleteUploadIn(CamelModel):
    """Request body for completing a multipart upload.

    ``parts`` may be empty only for a zero-byte object.
    """

    parts: list[CompletedPartIn] = Field(default_factory=list)


class ObjectOut(CamelModel):
    """Public view of a storage object.

    Storage location fields (key, bucket, backend) and the owner stay internal.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: str
    name: str
    size: int = Field(validation_alias="size_bytes")
    mime_type: str
    status: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime
