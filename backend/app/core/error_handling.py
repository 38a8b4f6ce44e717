"""Request correlation, request logging and uniform JSON error responses."""

from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.logging import get_logger
from app.core.time import utcnow
from app.services.consent.errors import ConsentError

if TYPE_CHECKING:
    from fastapi import FastAPI
    from starlette.requests import Request
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
_HEALTH_PATHS = frozenset({"/health", "/healthz", "/readyz"})
_MAX_REQUEST_ID_LENGTH = 128

CONSENT_ERROR_STATUS: dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "invalid_state": status.HTTP_409_CONFLICT,
    "already_acknowledged": status.HTTP_409_CONFLICT,
    "expired": status.HTTP_410_GONE,
    "cooling_period_ended": status.HTTP_410_GONE,
    "cooldown_active": status.HTTP_429_TOO_MANY_REQUESTS,
    "rate_limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
}
STORE_UNAVAILABLE_MESSAGE = "The service is temporarily unavailable. Please try again."


class RequestIdMiddleware:
    """Attach a request id to every request/response and log request timing."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or uuid4().hex
        scope.setdefault("state", {})["request_id"] = request_id
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        started = perf_counter()

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
                headers = MutableHeaders(scope=message)
                if REQUEST_ID_HEADER not in headers:
                    headers.append(REQUEST_ID_HEADER, request_id)
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            _log_request(scope, request_id, status_code, (perf_counter() - started) * 1000)


def _incoming_request_id(scope: Scope) -> str | None:
    for name, value in scope.get("headers", []):
        if name.decode("latin-1").lower() == REQUEST_ID_HEADER.lower():
            cleaned = value.decode("latin-1").strip()
            if cleaned and len(cleaned) <= _MAX_REQUEST_ID_LENGTH:
                return cleaned
    return None


def _log_request(scope: Scope, request_id: str, status_code: int, duration_ms: float) -> None:
    path = str(scope.get("path", ""))
    if path in _HEALTH_PATHS and not settings.request_log_include_health:
        return
    extra: dict[str, object] = {
        "request_id": request_id,
        "method": scope.get("method"),
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    threshold = settings.request_log_slow_ms
    if threshold and duration_ms >= threshold:
        logger.warning("http.request.slow", extra={**extra, "slow_threshold_ms": threshold})
        return
    logger.info("http.request.complete", extra=extra)


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _json_safe(value: object) -> object:
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


def _error_payload(*, detail: object, request_id: str | None, **fields: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail}
    payload.update({key: value for key, value in fields.items() if value is not None})
    if request_id is not None:
        payload["request_id"] = request_id
    return payload


def _json_response(
    request: Request,
    *,
    status_code: int,
    detail: object,
    headers: dict[str, str] | None = None,
    **fields: Any,
) -> JSONResponse:
    request_id = _get_request_id(request)
    response_headers = dict(headers or {})
    if request_id is not None:
        response_headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(_error_payload(detail=detail, request_id=request_id, **fields)),
        headers=response_headers,
    )


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        raise TypeError("Expected RequestValidationError")
    return _json_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=_json_safe(exc.errors()),
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, ResponseValidationError):
        raise TypeError("Expected ResponseValidationError")
    logger.error(
        "http.response.validation_failed",
        extra={"request_id": _get_request_id(request), "errors": _json_safe(exc.errors())},
    )
    return _json_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        raise TypeError("Expected StarletteHTTPException")
    return _json_response(
        request,
        status_code=exc.status_code,
        detail=_json_safe(exc.detail),
        headers=dict(exc.headers or {}),
    )


async def _consent_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, ConsentError):
        raise TypeError("Expected ConsentError")
    status_code = CONSENT_ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    headers: dict[str, str] = {}
    retry_at = exc.context.get("cooldown_ends_at") or exc.context.get("retry_after")
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS and retry_at is not None:
        headers["Retry-After"] = str(max(0, int((retry_at - utcnow()).total_seconds())))
    logger.info(
        "consent.request.rejected",
        extra={"request_id": _get_request_id(request), "code": exc.kind},
    )
    return _json_response(
        request,
        status_code=status_code,
        detail=exc.to_detail(),
        headers=headers,
        code=exc.kind,
    )


async def _store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, SQLAlchemyError):
        raise TypeError("Expected SQLAlchemyError")
    logger.error(
        "consent.store.unavailable",
        exc_info=exc,
        extra={"request_id": _get_request_id(request)},
    )
    return _json_response(
        request,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "store_unavailable", "message": STORE_UNAVAILABLE_MESSAGE},
        code="store_unavailable",
        retryable=True,
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "http.request.unhandled_exception",
        exc_info=exc,
        extra={"request_id": _get_request_id(request), "path": request.url.path},
    )
    return _json_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


def install_error_handling(app: FastAPI) -> None:
    """Register the request-id middleware and every exception handler on ``app``."""
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(ConsentError, _consent_error_handler)
    app.add_exception_handler(SQLAlchemyError, _store_error_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
