from __future__ import annotations

from typing import Any

from leadflow.providers.conversions.base import STATUS_COMPLETED, ConversionUpload, UploadResult


class NoopConversionProvider:
    """Accepts every upload without leaving the process; used for local runs and tests."""

    def __init__(self, provider_key: str = "google_ads") -> None:
        self.provider_key = provider_key
        self.uploaded: list[ConversionUpload] = []

    async def upload(
        self, uploads: list[ConversionUpload], *, credentials: dict[str, Any]
    ) -> list[UploadResult]:
        _ = credentials
        self.uploaded.extend(uploads)
        return [UploadResult(job_id=item.job_id, status=STATUS_COMPLETED) for item in uploads]

    async def aclose(self) -> None:
        return None
