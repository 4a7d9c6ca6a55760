from __future__ import annotations

from leadflow.core.config import Settings, get_settings
from leadflow.core.errors import ValidationError
from leadflow.providers.conversions.fake import NoopConversionProvider
from leadflow.providers.conversions.google_ads import GoogleAdsProvider


def get_conversion_provider(settings: Settings | None = None):
    settings = settings or get_settings()
    base_url = (settings.provider_base_url or "").strip()
    if base_url.startswith("noop://"):
        return NoopConversionProvider()
    if base_url.startswith(("http://", "https://")):
        return GoogleAdsProvider(base_url=base_url, timeout_ms=settings.provider_timeout_ms)
    raise ValidationError(f"Unsupported provider base url: {base_url or '<empty>'}")
