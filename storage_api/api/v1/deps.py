from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from storage_api.common.auth import AuthenticationError, Authenticator, Principal
from storage_api.common.config import Settings
from storage_api.infra.events.publisher import EventPublisher
from storage_api.infra.storage.client import StorageClient
from storage_api.infra.storage.s3_client import build_storage_client
from storage_api.services.bundle import get_service_bundle
from storage_api.services.object_service import ObjectService

logger = logging.getLogger("http")


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Generator:
    db = request.app.state.database.new_session()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_storage_client(request: Request) -> StorageClient:
    """Return the app's storage client, building it on first use.

    Building lazily lets the service start (and answer /health) before the
    object store is configured; requests that need it then fail with 500.
    """
    state = request.app.state
    client = getattr(state, "storage_client", None)
    if client is None:
        client = build_storage_client(state.settings)
        state.storage_client = client
    return client


def get_event_publisher(request: Request) -> EventPublisher:
    return request.app.state.event_publisher


def get_current_principal(
    request: Request,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> Principal:
    authenticator = Authenticator(get_app_settings(request))
    try:
        principal = authenticator.authenticate(
            authorization_header=authorization,
            fallback_user_id=x_user_id,
        )
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=401,
            detail={
                "message": str(exc),
                "error_code": "unauthenticated",
            },
        ) from exc
    request.state.user_id = principal.user_id
    return principal


def get_request_context(
    principal: Principal = Depends(get_current_principal),
    x_request_id: str | None = Header(default=None),
):
    return {
        "user_id": principal.user_id,
        "request_id": x_request_id,
        "principal": principal,
    }


def require_api_key(
    request: Request, x_api_key: str | None = Header(default=None)
) -> None:
    settings = get_app_settings(request)
    if settings.API_KEY_ENABLED:
        api_key_expected = settings.API_KEY
        if not x_api_key or (api_key_expected and x_api_key != api_key_expected):
            raise HTTPException(status_code=401, detail="Invalid API key")


def require_permissions(*permissions: str) -> Callable[..., None]:
    if not permissions:
        raise ValueError("At least one permission must be provided")

    def dependency(principal: Principal = Depends(get_current_principal)) -> None:
        missing = principal.missing_permissions(permissions)
        if missing:
            logger.warning(
                "permission_denied user_id=%s missing=%s",
                principal.user_id,
                ",".join(missing),
            )
            raise HTTPException(
                status_code=403,
                detail={
                    "message": "Missing required permissions",
                    "missing_permissions": missing,
                    "error_code": "permission_denied",
                },
            )

    return dependency


def get_object_service(
    request: Request,
    db: Session = Depends(get_db),
    storage_client: StorageClient = Depends(get_storage_client),
    event_publisher: EventPublisher = Depends(get_event_publisher),
) -> ObjectService:
    services = get_service_bundle(
        db,
        storage_client=storage_client,
        event_publisher=event_publisher,
        settings=get_app_settings(request),
    )
    return services.objects()
