from __future__ import annotations


class LeadflowError(Exception):
    """Base error for Leadflow."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", **details: object) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code)
        self.details = details


class ValidationError(LeadflowError):
    """Request payload failed validation."""

    status_code = 400
    code = "VALIDATION_FAILED"


class IdentityBoundaryError(ValidationError):
    """External requests must use public ids, not internal ids."""

    code = "IDENTITY_BOUNDARY"


class PayloadTooLarge(ValidationError):
    """Request body exceeds the size limit."""

    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class AuthError(LeadflowError):
    """Missing or invalid credentials."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class ForbiddenError(AuthError):
    """Authenticated caller lacks the required privilege."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class CronForbiddenError(ForbiddenError):
    """Scheduler credentials are missing or invalid."""

    code = "CRON_FORBIDDEN"


class SchedulerMisconfiguredError(LeadflowError):
    """Scheduler secret is not configured."""

    status_code = 503
    code = "CRON_SECRET_MISSING"


class Duplicate(LeadflowError):
    """Request already processed; treated as an idempotent no-op."""

    status_code = 200
    code = "DUPLICATE"


class QuotaExceeded(LeadflowError):
    """Monthly quota exhausted."""

    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        message: str = "",
        *,
        retry_after_s: int,
        headers: dict[str, str] | None = None,
        **details: object,
    ) -> None:
        super().__init__(message, **details)
        self.retry_after_s = retry_after_s
        self.headers = dict(headers or {})


class RateLimited(QuotaExceeded):
    """Request rate limit exceeded."""

    code = "RATE_LIMITED"


class NotFoundError(LeadflowError):
    """Resource not found for tenant."""

    status_code = 404
    code = "NOT_FOUND"


class ConcurrencyConflict(LeadflowError):
    """Call was updated by another user. Please refresh and try again."""

    status_code = 409
    code = "CONCURRENCY_CONFLICT"


class ProviderError(LeadflowError):
    """External conversion API failure."""

    status_code = 502
    code = "PROVIDER_ERROR"
    category = "TRANSIENT"

    def __init__(self, message: str = "", *, provider_code: str | None = None, **details: object) -> None:
        super().__init__(message, **details)
        self.provider_code = provider_code


class TransientProviderError(ProviderError):
    """Retryable conversion API failure."""

    category = "TRANSIENT"


class TerminalProviderError(ProviderError):
    """Non-retryable conversion API failure."""

    category = "VALIDATION"

    def __init__(
        self,
        message: str = "",
        *,
        category: str = "VALIDATION",
        provider_code: str | None = None,
        **details: object,
    ) -> None:
        super().__init__(message, provider_code=provider_code, **details)
        self.category = category


class ServiceUnavailableError(LeadflowError):
    """A required dependency is unavailable."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class InternalError(LeadflowError):
    """Unexpected internal failure."""


class CredentialsError(LeadflowError):
    """Provider credentials missing or unreadable."""
