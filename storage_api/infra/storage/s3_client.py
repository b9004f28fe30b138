"""S3-compatible storage client implementation.

Works with AWS S3, MinIO and other S3-compatible object stores.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, BinaryIO, Sequence

import boto3
from botocore.config import Config

from storage_api.infra.storage.client import (
    CompletedPart,
    MultipartUpload,
    StorageBackendError,
    StorageBackendNotConfiguredError,
    StoredObject,
)

if TYPE_CHECKING:
    from storage_api.common.config import Settings
    from storage_api.infra.storage.client import StorageClient


class S3StorageClient:
    """S3-compatible object storage client bound to one bucket."""

    def __init__(self, *, settings: "Settings") -> None:
        if not settings.S3_BUCKET:
            raise StorageBackendNotConfiguredError("S3_BUCKET is required")
        self._bucket = settings.S3_BUCKET
        self._client = self._build_client(settings)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a boto3 S3 client from settings."""
        addressing_style = (settings.S3_ADDRESSING_STYLE or "path").strip().lower()
        config = Config(s3={"addressing_style": addressing_style})

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def init_multipart_upload(
        self,
        *,
        object_key: str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> MultipartUpload:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": object_key}
        if content_type:
            params["ContentType"] = content_type
        if metadata:
            params["Metadata"] = metadata

        try:
            response = self._client.create_multipart_upload(**params)
        except Exception as exc:
            raise StorageBackendError(
                f"Failed to create multipart upload: {exc}"
            ) from exc

        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageBackendError("S3 response missing UploadId")

        return MultipartUpload(
            upload_id=str(upload_id),
            bucket=self._bucket,
            object_key=object_key,
        )

    def presign_upload_part(
        self,
        *,
        object_key: str,
        upload_id: str,
        part_number: int,
        expires_in: int,
    ) -> str:
        try:
            url = self._client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self._bucket,
                    "Key": object_key,
                    "UploadId": upload_id,
                    "PartNumber": int(part_number),
                },
                ExpiresIn=int(expires_in),
            )
        except Exception as exc:
            raise StorageBackendError(f"Failed to generate presigned URL: {exc}") from exc

        if not url:
            raise StorageBackendError("Generated presigned URL is empty")

        return str(url)

    def complete_multipart_upload(
        self,
        *,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> None:
        # S3 requires ascending part numbers
        multipart_payload = {
            "Parts": [
                {"ETag": part.etag, "PartNumber": int(part.part_number)}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }

        try:
            self._client.complete_multipart_upload(
                Bucket=self._bucket,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload=multipart_payload,
            )
        except Exception as exc:
            raise StorageBackendError(
                f"Failed to complete multipart upload: {exc}"
            ) from exc

    def abort_multipart_upload(self, *, object_key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(
                Bucket=self._bucket,
                Key=object_key,
                UploadId=upload_id,
            )
        except Exception as exc:
            raise StorageBackendError(f"Failed to abort multipart upload: {exc}") from exc

    def put_object(
        self,
        *,
        object_key: str,
        body: BinaryIO,
        content_type: str | None = None,
    ) -> StoredObject:
        extra_args: dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type

        try:
            # upload_fileobj streams from the file object without buffering it whole
            self._client.upload_fileobj(
                body, self._bucket, object_key, ExtraArgs=extra_args or None
            )
        except Exception as exc:
            raise StorageBackendError(f"Failed to upload object: {exc}") from exc

        return StoredObject(bucket=self._bucket, object_key=object_key)


def build_storage_client(settings: "Settings") -> "StorageClient":
    """Build the storage client selected by ``STORAGE_BACKEND``."""
    backend = (settings.STORAGE_BACKEND or "").strip().lower()
    if backend != "s3":
        raise StorageBackendNotConfiguredError(
            f"Unsupported storage backend: {backend}. Only 's3' is supported."
        )
    if not settings.S3_ACCESS_KEY_ID or not settings.S3_SECRET_ACCESS_KEY:
        raise StorageBackendNotConfiguredError(
            "S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY are required"
        )
    return S3StorageClient(settings=settings)
