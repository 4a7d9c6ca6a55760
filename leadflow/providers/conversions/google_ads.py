from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from leadflow.core.errors import ProviderError, TerminalProviderError, TransientProviderError
from leadflow.providers.conversions.base import (
    CATEGORY_AUTH,
    CATEGORY_VALIDATION,
    STATUS_COMPLETED,
    STATUS_FAILED,
    ConversionUpload,
    UploadResult,
)
from leadflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_TRANSIENT_4XX = {408, 409, 425, 429}


def conversion_date_time(upload: ConversionUpload) -> str:
    # Google expects "yyyy-mm-dd hh:mm:ss+00:00" without fractional seconds.
    return upload.conversion_time.strftime("%Y-%m-%d %H:%M:%S") + "+00:00"


def to_click_conversion(upload: ConversionUpload, conversion_action: str) -> dict[str, Any] | None:
    request: dict[str, Any] = {
        "conversionAction": conversion_action,
        "conversionDateTime": conversion_date_time(upload),
        "conversionValue": upload.value_cents / 100,
        "currencyCode": (upload.currency or "TRY")[:3],
        "orderId": upload.job_id,
    }
    # Exactly one click identifier per conversion, gclid preferred.
    if upload.gclid:
        request["gclid"] = upload.gclid
    elif upload.wbraid:
        request["wbraid"] = upload.wbraid
    elif upload.gbraid:
        request["gbraid"] = upload.gbraid
    else:
        return None
    return request


def classify_http_error(exc: httpx.HTTPError) -> ProviderError:
    """Map transport and HTTP failures onto retryable or terminal provider errors."""
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
        code = f"http_{status_code}"
        if status_code in {401, 403}:
            return TerminalProviderError(
                f"Provider rejected credentials ({status_code})", category=CATEGORY_AUTH, provider_code=code
            )
        if 400 <= status_code < 500 and status_code not in _TRANSIENT_4XX:
            return TerminalProviderError(
                f"Provider rejected request ({status_code})", category=CATEGORY_VALIDATION, provider_code=code
            )
        return TransientProviderError(f"Provider unavailable ({status_code})", provider_code=code)
    if isinstance(exc, httpx.TimeoutException):
        return TransientProviderError("Provider request timed out", provider_code="timeout")
    return TransientProviderError(f"Provider request failed: {type(exc).__name__}", provider_code="network")


def _partial_failures(body: Any) -> dict[int, tuple[str, str]]:
    # partialFailureError.details[].errors[] point back at request indexes.
    failures: dict[int, tuple[str, str]] = {}
    partial = body.get("partialFailureError") if isinstance(body, dict) else None
    if not isinstance(partial, dict):
        return failures
    for detail in partial.get("details") or []:
        for error in (detail or {}).get("errors") or []:
            elements = ((error or {}).get("location") or {}).get("fieldPathElements") or []
            index = next((item.get("index") for item in elements if isinstance(item, dict) and "index" in item), None)
            if not isinstance(index, int):
                continue
            code_obj = error.get("errorCode") or {}
            code = next(iter(code_obj.values()), "UNKNOWN") if isinstance(code_obj, dict) else "UNKNOWN"
            failures[index] = (str(code)[:64], str(error.get("message") or "Conversion rejected")[:1000])
    return failures


class GoogleAdsProvider:
    provider_key = "google_ads"

    def __init__(
        self,
        *,
        base_url: str,
        timeout_ms: int = 8000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = max(1, int(timeout_ms)) / 1000.0
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def upload(
        self, uploads: list[ConversionUpload], *, credentials: dict[str, Any]
    ) -> list[UploadResult]:
        customer_id = str(credentials.get("customer_id") or "").replace("-", "")
        conversion_action = str(credentials.get("conversion_action_resource_name") or "").strip()
        access_token = str(credentials.get("access_token") or "").strip()
        if not customer_id or not conversion_action or not access_token:
            raise TerminalProviderError(
                "Google Ads credentials are incomplete", category=CATEGORY_AUTH, provider_code="credentials_incomplete"
            )

        results: dict[str, UploadResult] = {}
        indexed: list[ConversionUpload] = []
        conversions: list[dict[str, Any]] = []
        for upload in uploads:
            conversion = to_click_conversion(upload, conversion_action)
            if conversion is None:
                results[upload.job_id] = UploadResult(
                    job_id=upload.job_id,
                    status=STATUS_FAILED,
                    error_code="MISSING_CLICK_ID",
                    error_message="No gclid, wbraid or gbraid on job",
                    category=CATEGORY_VALIDATION,
                )
                continue
            indexed.append(upload)
            conversions.append(conversion)

        if conversions:
            headers = {"Authorization": f"Bearer {access_token}"}
            if credentials.get("developer_token"):
                headers["developer-token"] = str(credentials["developer_token"])
            if credentials.get("login_customer_id"):
                headers["login-customer-id"] = str(credentials["login_customer_id"]).replace("-", "")
            start = time.monotonic()
            try:
                response = await self._get_client().post(
                    f"{self._base_url}/customers/{customer_id}:uploadClickConversions",
                    json={"conversions": conversions, "partialFailure": True},
                    headers=headers,
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                increment_counter("provider.google_ads.error")
                raise classify_http_error(exc) from exc
            finally:
                logger.debug(
                    "provider_upload provider=google_ads count=%s latency_ms=%.1f",
                    len(conversions),
                    (time.monotonic() - start) * 1000.0,
                )
            try:
                body = response.json()
            except ValueError:
                body = {}
            failures = _partial_failures(body)
            for index, upload in enumerate(indexed):
                if index in failures:
                    code, message = failures[index]
                    results[upload.job_id] = UploadResult(
                        job_id=upload.job_id,
                        status=STATUS_FAILED,
                        error_code=code,
                        error_message=message,
                        category=CATEGORY_VALIDATION,
                    )
                else:
                    results[upload.job_id] = UploadResult(job_id=upload.job_id, status=STATUS_COMPLETED)
        return [results[upload.job_id] for upload in uploads]
