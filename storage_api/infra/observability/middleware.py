import json
import logging
import re
import time
import uuid
from typing import Any

from fastapi import Request
from starlette.concurrency import iterate_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from storage_api.infra.observability.metrics import LATENCY, REQUESTS

MAX_TRACED_BODY = 2048

SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "access_token",
    "refresh_token",
    "api_key",
    "x-api-key",
    "authorization",
    "url",
}

_TEXT_PATTERNS = (
    re.compile(
        r"(?i)(token|secret|api_key|x-api-key|password|authorization)\s*[:=]\s*[^\s]+"
    ),
    re.compile(r"(?i)(X-Amz-Signature|X-Amz-Credential|Signature)=[^&\s\"]+"),
)


def mask_mapping(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: "***"
            if isinstance(k, str) and k.lower() in SENSITIVE_KEYS
            else mask_mapping(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [mask_mapping(x) for x in obj]
    return obj


def mask_text(text: str) -> str:
    masked = text
    for pattern in _TEXT_PATTERNS:
        masked = pattern.sub(lambda m: f"{m.group(1)}=***", masked)
    return masked


def render_body(raw: bytes) -> str | None:
    """Decode a body for tracing with secrets masked and length capped."""
    if not raw:
        return None
    decoded = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(decoded)
    except ValueError:
        rendered = mask_text(decoded)
    else:
        # presigned URLs carry credentials, so "url" keys are masked as well
        rendered = json.dumps(mask_mapping(parsed), ensure_ascii=False)
    if len(rendered) > MAX_TRACED_BODY:
        rendered = rendered[:MAX_TRACED_BODY] + "...<truncated>"
    return rendered


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return route.path
    return request.url.path


def _user_id(request: Request) -> str:
    return (
        getattr(request.state, "user_id", None)
        or request.headers.get("X-User-Id")
        or "<missing>"
    )


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request metrics, propagates X-Request-Id and logs each request."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        trace_http = request.app.state.settings.TRACE_HTTP
        logger = logging.getLogger("http")

        request_body: str | None = None
        if trace_http and not request.headers.get("content-type", "").startswith(
            "multipart/"
        ):
            raw_body = await request.body()
            request_body = render_body(raw_body)

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 3)
            logger.exception(
                "request_error method=%s route=%s duration_ms=%.3f request_id=%s",
                request.method,
                request.url.path,
                elapsed_ms,
                request_id,
                extra={
                    "extra": {
                        "method": request.method,
                        "route": request.url.path,
                        "status": 500,
                        "duration_ms": elapsed_ms,
                        "request_id": request_id,
                        "user_id": _user_id(request),
                        "client_ip": _client_ip(request),
                        "exception": repr(exc),
                    }
                },
            )
            raise

        elapsed = time.perf_counter() - start
        route = _route_label(request)
        status_code = response.status_code
        REQUESTS.labels(request.method, route, str(status_code)).inc()
        LATENCY.labels(request.method, route).observe(elapsed)

        if "X-Request-Id" not in response.headers:
            response.headers["X-Request-Id"] = request_id

        extra_payload: dict[str, Any] = {
            "method": request.method,
            "route": route,
            "query": request.url.query,
            "status": status_code,
            "duration_ms": round(elapsed * 1000, 3),
            "request_id": request_id,
            "user_id": _user_id(request),
            "client_ip": _client_ip(request),
            "user_agent": request.headers.get("User-Agent"),
        }
        if trace_http:
            chunks = [chunk async for chunk in response.body_iterator]
            raw_response = b"".join(
                c if isinstance(c, bytes) else c.encode("utf-8") for c in chunks
            )
            response.body_iterator = iterate_in_threadpool(iter([raw_response]))
            extra_payload["request_body"] = request_body
            extra_payload["response_body"] = render_body(raw_response)

        level = logging.INFO
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        logger.log(
            level,
            "request method=%s route=%s status=%s duration_ms=%.3f request_id=%s user_id=%s",
            request.method,
            route,
            status_code,
            extra_payload["duration_ms"],
            request_id,
            extra_payload["user_id"],
            extra={"extra": extra_payload},
        )
        return response
