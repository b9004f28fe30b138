from .base import BaseService, MissingUserError, ServiceError
from .bundle import ServiceBundle, get_service_bundle
from .object_service import (
    InitUploadData,
    InitUploadResult,
    InvalidUploadOperationError,
    ObjectAccessDeniedError,
    ObjectNotFoundError,
    ObjectService,
    PartUrl,
    PartUrlBatch,
    SimpleUploadData,
    UploadConfigurationError,
    UploadStatus,
    UploadValidationError,
    build_storage_key,
    total_parts_for,
)

__all__ = [
    "BaseService",
    "ServiceError",
    "MissingUserError",
    "ServiceBundle",
    "get_service_bundle",
    "ObjectService",
    "InitUploadData",
    "InitUploadResult",
    "PartUrl",
    "PartUrlBatch",
    "SimpleUploadData",
    "UploadStatus",
    "ObjectNotFoundError",
    "ObjectAccessDeniedError",
    "InvalidUploadOperationError",
    "UploadValidationError",
    "UploadConfigurationError",
    "build_storage_key",
    "total_parts_for",
]
