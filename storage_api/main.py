import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, OperationalError, ProgrammingError

from storage_api.api.v1.deps import get_db, require_api_key
from storage_api.api.v1.routers.objects import router as objects_router
from storage_api.common.config import Settings, get_settings
from storage_api.common.logging import setup_logging
from storage_api.infra.db.alembic_support import get_head_revision, upgrade_to_head
from storage_api.infra.db.session import Database
from storage_api.infra.events.publisher import EventPublisher, build_event_publisher
from storage_api.infra.observability.metrics import metrics_app
from storage_api.infra.observability.middleware import MetricsMiddleware
from storage_api.infra.storage.client import (
    StorageBackendError,
    StorageBackendNotConfiguredError,
    StorageClient,
)
from storage_api.services.base import MissingUserError, ServiceError
from storage_api.services.object_service import (
    InvalidUploadOperationError,
    ObjectAccessDeniedError,
    ObjectNotFoundError,
    UploadConfigurationError,
    UploadValidationError,
)

ERROR_CODE_BY_STATUS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    415: "unsupported_media_type",
    429: "too_many_requests",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
}

# first match wins, so subclasses come before their bases
DOMAIN_ERRORS: tuple[tuple[type[Exception], int, str], ...] = (
    (ObjectNotFoundError, 404, "object_not_found"),
    (ObjectAccessDeniedError, 403, "object_forbidden"),
    (InvalidUploadOperationError, 400, "invalid_upload_state"),
    (UploadValidationError, 400, "upload_validation_failed"),
    (MissingUserError, 400, "missing_user"),
    (UploadConfigurationError, 500, "storage_misconfigured"),
    (StorageBackendNotConfiguredError, 500, "storage_misconfigured"),
    (StorageBackendError, 502, "storage_backend_error"),
    (ServiceError, 400, "bad_request"),
)

REQUIRED_TABLES = frozenset(
    {"storage_objects", "storage_object_parts", "idempotency_records"}
)

startup_logger = logging.getLogger("storage_api.startup")


def _normalize_detail(detail):
    if isinstance(detail, dict):
        maybe_code = detail.get("error_code")
        cleaned = {k: v for k, v in detail.items() if k != "error_code"}
        if len(cleaned) == 1 and "message" in cleaned:
            cleaned = cleaned["message"]
        if not cleaned:
            cleaned = None
        return cleaned, maybe_code if isinstance(maybe_code, str) else None
    return detail, None


def _resolve_error_code(status_code: int, override: str | None = None) -> str:
    if override:
        return override
    if status_code == 422:
        return "validation_error"
    return ERROR_CODE_BY_STATUS.get(status_code, "unknown_error")


def _classify_domain_error(exc: Exception) -> tuple[int, str]:
    for error_type, status_code, error_code in DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, error_code
    return 500, "internal_error"


def _problem(
    request: Request,
    *,
    status_code: int,
    title: str,
    detail,
    error_code: str,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": title,
            "status": status_code,
            "detail": detail,
            "error_code": error_code,
            "instance": str(request.url),
            "request_id": _request_id(request),
        },
    )


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or request.headers.get(
        "X-Request-Id"
    )


def _user_id(request: Request) -> str:
    return (
        getattr(request.state, "user_id", None)
        or request.headers.get("X-User-Id")
        or "<missing>"
    )


def _collect_db_metadata(db_url: str) -> dict[str, object]:
    try:
        url = make_url(db_url)
    except ArgumentError:
        return {"db_target": "<invalid>", "db_driver": "<unknown>"}

    payload: dict[str, object] = {"db_driver": url.drivername}
    if url.username:
        payload["db_username"] = url.username
    if url.host:
        payload["db_host"] = url.host
    if url.port:
        payload["db_port"] = url.port
    if url.database:
        payload["db_name"] = url.database
    return payload


def _format_db_context(db_url: str) -> str:
    meta = _collect_db_metadata(db_url)
    parts: list[str] = []
    for key in ("db_driver", "db_username", "db_host", "db_port", "db_name"):
        value = meta.get(key)
        if value is not None:
            parts.append(f"{key}={value}")
    return ", ".join(parts)


def _apply_migrations(settings: Settings, database: Database) -> None:
    db_context_text = _format_db_context(settings.DB_URL)
    startup_logger.info(
        "正在执行数据库迁移前的连接检查。[event=auto_migration_precheck] (%s)",
        db_context_text,
    )
    try:
        with database.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except OperationalError as exc:
        startup_logger.error(
            "无法连接数据库，应用启动中断，请检查 DB_URL、账号密码或网络配置。"
            " [event=auto_migration_connection_failed] (%s，error=%s)",
            db_context_text,
            exc,
        )
        raise
    try:
        upgrade_to_head(settings.DB_URL)
    except Exception:
        startup_logger.exception(
            "自动执行数据库迁移失败，请检查数据库权限与迁移脚本。"
            " [event=auto_migration_failed] (%s)",
            db_context_text,
        )
        raise
    startup_logger.info(
        "数据库迁移完成，应用继续启动。 [event=auto_migration_succeeded] (%s)",
        db_context_text,
    )


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    storage_client: StorageClient | None = None,
    event_publisher: EventPublisher | None = None,
) -> FastAPI:
    """Build the application with its collaborators wired explicitly.

    Anything not passed in is built from settings. The storage client may stay
    unset; it is then created on the first request that needs it.
    """
    settings = settings or get_settings()
    setup_logging()
    owns_database = database is None
    database = database or Database.from_settings(settings)
    event_publisher = event_publisher or build_event_publisher(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.AUTO_APPLY_MIGRATIONS:
            _apply_migrations(settings, database)
        yield
        close = getattr(event_publisher, "close", None)
        if callable(close):
            close()
        if owns_database:
            database.dispose()

    app = FastAPI(
        title="Storage Upload Service",
        version="v1.0",
        description="Multipart and simple uploads to S3-compatible object storage",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.storage_client = storage_client
    app.state.event_publisher = event_publisher

    # Optional CORS
    if settings.CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(
        objects_router,
        prefix="/api/v1",
        tags=["storage"],
        dependencies=[Depends(require_api_key)],
    )

    # Metrics
    if settings.ENABLE_METRICS:
        app.add_middleware(MetricsMiddleware)
        app.mount("/metrics", metrics_app)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger = logging.getLogger("http")
        normalized_detail, code_override = _normalize_detail(exc.detail)
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "http_exception status=%s detail=%s method=%s path=%s request_id=%s user_id=%s",
            exc.status_code,
            normalized_detail,
            request.method,
            request.url.path,
            _request_id(request),
            _user_id(request),
            extra={
                "extra": {
                    "status": exc.status_code,
                    "detail": normalized_detail,
                    "method": request.method,
                    "route": request.url.path,
                    "request_id": _request_id(request),
                    "user_id": _user_id(request),
                }
            },
        )
        return _problem(
            request,
            status_code=exc.status_code,
            title="HTTP Error",
            detail=normalized_detail,
            error_code=_resolve_error_code(exc.status_code, code_override),
        )

    async def domain_exception_handler(request: Request, exc: Exception):
        logger = logging.getLogger("http")
        status_code, error_code = _classify_domain_error(exc)
        if status_code >= 500:
            logger.error(
                "domain_error status=%s error_code=%s method=%s path=%s request_id=%s",
                status_code,
                error_code,
                request.method,
                request.url.path,
                _request_id(request),
                exc_info=exc,
            )
            detail = (
                "Storage backend request failed"
                if status_code == 502
                else "Storage service is misconfigured"
            )
        else:
            logger.warning(
                "domain_error status=%s error_code=%s detail=%s method=%s path=%s user_id=%s",
                status_code,
                error_code,
                exc,
                request.method,
                request.url.path,
                _user_id(request),
            )
            detail = str(exc)
        return _problem(
            request,
            status_code=status_code,
            title="Upload Error",
            detail=detail,
            error_code=error_code,
        )

    for error_type in (
        ServiceError,
        StorageBackendError,
        StorageBackendNotConfiguredError,
    ):
        app.add_exception_handler(error_type, domain_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        return _problem(
            request,
            status_code=422,
            title="Validation Error",
            # 确保可序列化
            detail=jsonable_encoder(exc.errors()),
            error_code=_resolve_error_code(422),
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready(db=Depends(get_db)):
        try:
            bind = db.get_bind()
            db.execute(text("SELECT 1"))
            tables = set(inspect(bind).get_table_names())
            missing = sorted(REQUIRED_TABLES - tables)
            detail: dict[str, object] = {}
            if missing:
                detail["missing_tables"] = missing

            if bind.dialect.name == "postgresql":
                head = get_head_revision()
                try:
                    current = db.execute(
                        text("SELECT version_num FROM alembic_version")
                    ).scalar_one_or_none()
                except ProgrammingError as exc:
                    db.rollback()
                    detail["migrations"] = {
                        "status": "version_table_missing",
                        "expected": head,
                        "detail": str(exc),
                    }
                else:
                    if head and current != head:
                        detail["migrations"] = {
                            "status": "out_of_date",
                            "current": current,
                            "expected": head,
                        }

            if detail:
                return {"status": "not_ready", "detail": detail}
            return {"status": "ready"}
        except OperationalError as exc:
            return {"status": "not_ready", "detail": {"db": str(exc)}}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("storage_api.main:app", host="0.0.0.0", port=8000, reload=True)
