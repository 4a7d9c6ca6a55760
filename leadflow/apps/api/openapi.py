from __future__ import annotations

from typing import Any

from leadflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _entry(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {"example": _error_example(code=code, message=message, details=details)}
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _entry("Bad request", code="VALIDATION_FAILED", message="Request payload failed validation."),
    401: _entry("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid credentials."),
    403: _entry("Forbidden", code="AUTH_FORBIDDEN", message="Authenticated caller lacks the required privilege."),
    404: _entry("Not found", code="NOT_FOUND", message="Resource not found for tenant."),
    409: _entry(
        "Concurrency conflict",
        code="CONCURRENCY_CONFLICT",
        message="Call was updated by another user. Please refresh and try again.",
        details={"expected_version": 3},
    ),
    429: _entry(
        "Quota exceeded or rate limited",
        code="QUOTA_EXCEEDED",
        message="Monthly quota exhausted.",
        details={"retry_after_s": 86400},
    ),
    500: _entry("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _entry("Service unavailable", code="CRON_SECRET_MISSING", message="Scheduler secret is not configured"),
}

SCHEDULER_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    403: _entry("Forbidden", code="CRON_FORBIDDEN", message="Invalid scheduler credentials"),
    503: DEFAULT_ERROR_RESPONSES[503],
}
