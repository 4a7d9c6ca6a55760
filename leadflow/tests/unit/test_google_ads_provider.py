from __future__ import annotations

from datetime import datetime, timezone
import json

import httpx
import pytest

from leadflow.core.errors import TerminalProviderError, TransientProviderError
from leadflow.providers.conversions.base import CATEGORY_AUTH, STATUS_COMPLETED, STATUS_FAILED, ConversionUpload
from leadflow.providers.conversions.google_ads import GoogleAdsProvider, classify_http_error


CREDENTIALS = {
    "customer_id": "123-456-7890",
    "conversion_action_resource_name": "customers/1234567890/conversionActions/42",
    "access_token": "token",
    "developer_token": "dev",
}


def _upload(job_id: str, **click_ids: str) -> ConversionUpload:
    return ConversionUpload(
        job_id=job_id,
        tenant_id="tenant-a",
        action="seal",
        conversion_time=datetime(2026, 6, 1, 12, 30, 15, 999, tzinfo=timezone.utc),
        value_cents=40000,
        currency="TRY",
        **click_ids,
    )


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://ads.example.test/upload")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


def test_http_errors_are_classified() -> None:
    auth = classify_http_error(_status_error(401))
    assert isinstance(auth, TerminalProviderError)
    assert auth.category == CATEGORY_AUTH
    assert isinstance(classify_http_error(_status_error(400)), TerminalProviderError)
    assert isinstance(classify_http_error(_status_error(429)), TransientProviderError)
    assert isinstance(classify_http_error(_status_error(503)), TransientProviderError)
    timeout = classify_http_error(httpx.ReadTimeout("slow"))
    assert timeout.provider_code == "timeout"


@pytest.mark.asyncio
async def test_partial_failure_marks_only_the_failed_row() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "partialFailureError": {
                    "details": [
                        {
                            "errors": [
                                {
                                    "errorCode": {"conversionUploadError": "EXPIRED_CLICK"},
                                    "message": "Click is too old",
                                    "location": {"fieldPathElements": [{"fieldName": "conversions", "index": 1}]},
                                }
                            ]
                        }
                    ]
                }
            },
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = GoogleAdsProvider(base_url="https://ads.example.test/v17", client=client)
    results = await provider.upload(
        [_upload("job-1", gclid="g-1"), _upload("job-2", wbraid="w-2")], credentials=CREDENTIALS
    )
    await provider.aclose()

    assert captured["url"] == "https://ads.example.test/v17/customers/1234567890:uploadClickConversions"
    assert captured["headers"]["developer-token"] == "dev"
    conversions = captured["body"]["conversions"]
    assert conversions[0]["gclid"] == "g-1"
    assert conversions[0]["conversionDateTime"] == "2026-06-01 12:30:15+00:00"
    assert conversions[0]["conversionValue"] == 400.0
    assert "gclid" not in conversions[1] and conversions[1]["wbraid"] == "w-2"

    assert [result.status for result in results] == [STATUS_COMPLETED, STATUS_FAILED]
    assert results[1].error_code == "EXPIRED_CLICK"


@pytest.mark.asyncio
async def test_upload_without_click_id_never_reaches_the_api() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    provider = GoogleAdsProvider(
        base_url="https://ads.example.test", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    results = await provider.upload([_upload("job-1")], credentials=CREDENTIALS)
    await provider.aclose()
    assert calls == []
    assert results[0].status == STATUS_FAILED
    assert results[0].error_code == "MISSING_CLICK_ID"


@pytest.mark.asyncio
async def test_incomplete_credentials_are_terminal() -> None:
    provider = GoogleAdsProvider(base_url="https://ads.example.test")
    with pytest.raises(TerminalProviderError) as excinfo:
        await provider.upload([_upload("job-1", gclid="g")], credentials={"customer_id": "1"})
    assert excinfo.value.category == CATEGORY_AUTH
    assert excinfo.value.provider_code == "credentials_incomplete"


@pytest.mark.asyncio
async def test_server_error_raises_transient() -> None:
    provider = GoogleAdsProvider(
        base_url="https://ads.example.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502))),
    )
    with pytest.raises(TransientProviderError):
        await provider.upload([_upload("job-1", gclid="g")], credentials=CREDENTIALS)
    await provider.aclose()
