"""Storage object API router.

Endpoints for the upload lifecycle: multipart init, part URL signing, part
progress, completion and abort, plus one-shot simple uploads. Service errors
propagate to the application's problem+json handlers.
"""

from __future__ import annotations

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Request,
    Response,
    UploadFile,
    status,
)
from sqlalchemy.orm import Session

from storage_api.api.v1.deps import (
    get_app_settings,
    get_db,
    get_object_service,
    get_request_context,
    require_permissions,
)
from storage_api.api.v1.schemas.objects import (
    CompleteUploadIn,
    Envelope,
    InitUploadIn,
    InitUploadOut,
    ObjectOut,
    PartUrlOut,
    PartUrlsIn,
    PartUrlsOut,
    RecordPartIn,
    UploadStatusOut,
)
from storage_api.common.config import Settings
from storage_api.common.idempotency import IdempotencyService
from storage_api.common.permissions import Permissions
from storage_api.domain.repositories.object_repository import PartRecord
from storage_api.infra.storage.client import CompletedPart
from storage_api.services.object_service import (
    InitUploadData,
    InitUploadResult,
    ObjectService,
    PartUrl,
    SimpleUploadData,
    UploadStatus,
)

router = APIRouter()

_read = [Depends(require_permissions(Permissions.STORAGE_READ))]
_write = [Depends(require_permissions(Permissions.STORAGE_WRITE))]


def _url_out(urls: list[PartUrl]) -> list[PartUrlOut]:
    return [PartUrlOut(part_number=u.part_number, url=u.url) for u in urls]


def _init_out(result: InitUploadResult) -> InitUploadOut:
    return InitUploadOut(
        object_id=result.storage_object.id,
        upload_session_id=result.upload_session_id,
        part_size=result.part_size_bytes,
        total_parts=result.total_parts,
        presigned_urls=_url_out(result.presigned_urls),
        expires_in=result.expires_in,
    )


def _status_out(snapshot: UploadStatus) -> UploadStatusOut:
    return UploadStatusOut(
        object_id=snapshot.object_id,
        status=snapshot.status,
        uploaded_parts=snapshot.uploaded_parts,
        total_parts=snapshot.total_parts,
        uploaded_bytes=snapshot.uploaded_bytes,
        total_bytes=snapshot.total_bytes,
    )


@router.post(
    "/storage/objects/upload/init",
    response_model=Envelope[InitUploadOut],
    status_code=status.HTTP_201_CREATED,
    dependencies=_write,
    summary="Initialize multipart upload",
    description=(
        "Create a pending object, open a multipart session and presign the "
        "first part URLs. Honours the Idempotency-Key header."
    ),
)
def init_upload(
    request: Request,
    payload: InitUploadIn,
    db: Session = Depends(get_db),
    ctx: dict = Depends(get_request_context),
    service: ObjectService = Depends(get_object_service),
) -> Envelope[InitUploadOut]:
    user_id = ctx["user_id"]
    idempotency = IdempotencyService(db)

    def executor() -> InitUploadOut:
        data = InitUploadData(
            name=payload.name,
            size_bytes=payload.size,
            mime_type=payload.mime_type,
        )
        return _init_out(service.init_upload(data, user_id=user_id))

    result = idempotency.handle(
        request=request,
        payload={"body": payload.model_dump()},
        status_code=status.HTTP_201_CREATED,
        executor=executor,
        user_id=user_id,
        discard=lambda out: service.abort_upload(out.object_id, user_id=user_id),
    )
    out = InitUploadOut.model_validate(result.response) if result.replay else result.response
    return Envelope[InitUploadOut](data=out)


@router.get(
    "/storage/objects/{object_id}/upload/status",
    response_model=Envelope[UploadStatusOut],
    dependencies=_read,
    summary="Get upload status",
    description="Report uploaded parts and bytes for an object owned by the caller.",
)
def get_upload_status(
    object_id: str,
    ctx: dict = Depends(get_request_context),
    service: ObjectService = Depends(get_object_service),
) -> Envelope[UploadStatusOut]:
    snapshot = service.get_upload_status(object_id, user_id=ctx["user_id"])
    return Envelope[UploadStatusOut](data=_status_out(snapshot))


@router.post(
    "/storage/objects/{object_id}/upload/part-urls",
    response_model=Envelope[PartUrlsOut],
    dependencies=_write,
    summary="Presign part URLs",
    description="Presign upload URLs for parts beyond the initial batch.",
)
def sign_part_urls(
    object_id: str,
    payload: PartUrlsIn,
    ctx: dict = Depends(get_request_context),
    service: ObjectService = Depends(get_object_service),
) -> Envelope[PartUrlsOut]:
    batch = service.sign_part_urls(
        object_id, payload.part_numbers, user_id=ctx["user_id"]
    )
    return Envelope[PartUrlsOut](
        data=PartUrlsOut(
            upload_session_id=batch.upload_session_id,
            urls=_url_out(batch.urls),
            expires_in=batch.expires_in,
        )
    )


@router.put(
    "/storage/objects/{object_id}/upload/parts/{part_number}",
    response_model=Envelope[UploadStatusOut],
    dependencies=_write,
    summary="Record an uploaded part",
    description="Record the eTag (and optionally size) of a part the client uploaded.",
)
def record_part(
    object_id: str,
    part_number: int,
    payload: RecordPartIn,
    ctx: dict = Depends(get_request_context),
    service: ObjectService = Depends(get_object_service),
) -> Envelope[UploadStatusOut]:
    snapshot = service.record_part(
        object_id,
        PartRecord(part_number=part_number, etag=payload.etag, size_bytes=payload.size),
        user_id=ctx["user_id"],
    )
    return Envelope[UploadStatusOut](data=_status_out(snapshot))


@router.post(
    "/storage/objects/{object_id}/upload/complete",
    response_model=Envelope[ObjectOut],
    dependencies=_write,
    summary="Complete multipart upload",
    description="Assemble the uploaded parts and hand the object to post-processing.",
)
def complete_upload(
    object_id: str,
    payload: CompleteUploadIn,
    ctx: dict = Depends(get_request_context),
    service: ObjectService = Depends(get_object_service),
) -> Envelope[ObjectOut]:
    parts = [
        CompletedPart(part_number=p.part_number, etag=p.etag) for p in payload.parts
    ]
    storage_object = service.complete_upload(
        object_id, parts, user_id=ctx["user_id"]
    )
    return Envelope[ObjectOut](data=ObjectOut.model_validate(storage_object))


@router.delete(
    "/storage/objects/{object_id}/upload/abort",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    dependencies=_write,
    summary="Abort multipart upload",
    description="Release the multipart session and delete the pending object.",
)
def abort_upload(
    object_id: str,
    ctx: dict = Depends(get_request_context),
    service: ObjectService = Depends(get_object_service),
) -> Response:
    service.abort_upload(object_id, user_id=ctx["user_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/storage/objects",
    response_model=Envelope[ObjectOut],
    status_code=status.HTTP_201_CREATED,
    dependencies=_write,
    summary="Simple upload",
    description="Upload a small file in one request (multipart form field 'file').",
)
def simple_upload(
    file: UploadFile = File(...),
    ctx: dict = Depends(get_request_context),
    settings: Settings = Depends(get_app_settings),
    service: ObjectService = Depends(get_object_service),
) -> Envelope[ObjectOut]:
    limit = settings.STORAGE_SIMPLE_UPLOAD_MAX_BYTES
    if file.size is not None and file.size > limit:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the simple upload limit of {limit} bytes; use multipart upload",
        )
    storage_object = service.simple_upload(
        SimpleUploadData(
            file_name=file.filename or "file",
            mime_type=file.content_type or "application/octet-stream",
            body=file.file,
        ),
        user_id=ctx["user_id"],
    )
    return Envelope[ObjectOut](data=ObjectOut.model_validate(storage_object))
