from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


STATUS_COMPLETED = "COMPLETED"
STATUS_RETRY = "RETRY"
STATUS_FAILED = "FAILED"

CATEGORY_VALIDATION = "VALIDATION"
CATEGORY_TRANSIENT = "TRANSIENT"
CATEGORY_AUTH = "AUTH"


@dataclass(frozen=True)
class ConversionUpload:
    job_id: str
    tenant_id: str
    action: str | None
    conversion_time: datetime
    value_cents: int
    currency: str
    gclid: str | None = None
    wbraid: str | None = None
    gbraid: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadResult:
    job_id: str
    status: str
    error_code: str | None = None
    error_message: str | None = None
    category: str | None = None


class ConversionProvider(Protocol):
    provider_key: str

    async def upload(
        self, uploads: list[ConversionUpload], *, credentials: dict[str, Any]
    ) -> list[UploadResult]:
        ...

    async def aclose(self) -> None:
        ...
