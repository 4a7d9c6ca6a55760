from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from leadflow.apps.api.response import error_response
from leadflow.core.errors import AuthError, LeadflowError, QuotaExceeded
from leadflow.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies share the 400 VALIDATION_FAILED code raised by the domain layer.
    payload = error_response(
        request=request,
        code="VALIDATION_FAILED",
        message="Request payload failed validation",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=400)


def _jsonable_details(details: dict[str, Any]) -> dict[str, Any] | None:
    cleaned = {key: value for key, value in details.items() if isinstance(value, (str, int, float, bool, type(None)))}
    return cleaned or None


async def leadflow_exception_handler(request: Request, exc: LeadflowError) -> JSONResponse:
    # Map the domain taxonomy onto stable codes; internal errors never echo their message.
    headers: dict[str, str] = {}
    message = exc.message
    if isinstance(exc, QuotaExceeded):
        headers.update(exc.headers)
        headers["Retry-After"] = str(max(1, int(exc.retry_after_s)))
    if isinstance(exc, AuthError) and exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if exc.status_code >= 500 and exc.status_code not in {502, 503}:
        logger.error("request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
        message = "Internal server error"
    payload = error_response(
        request=request,
        code=exc.code,
        message=message,
        details=_jsonable_details(exc.details),
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers or None)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A missing tenant predicate is a programming error; never leak the query shape.
    logger.error("tenant_predicate_violation path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="TENANT_PREDICATE_REQUIRED",
        message="Tenant scope is required for this operation",
    )
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
