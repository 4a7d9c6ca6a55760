from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.core.errors import CredentialsError
from leadflow.domain.models import ProviderCredential
from leadflow.persistence.guards import tenant_predicate


def _build_fernet() -> Fernet:
    # Provider secrets are never stored in plaintext; a missing master key is a hard error.
    source = (get_settings().credentials_master_key or "").strip()
    if not source:
        raise CredentialsError("CREDENTIALS_MASTER_KEY is not configured")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def encrypt_credentials(payload: dict[str, Any]) -> str:
    token = _build_fernet().encrypt(json.dumps(payload, sort_keys=True).encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_credentials(token: str) -> dict[str, Any]:
    try:
        raw = _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken as exc:
        raise CredentialsError("Provider credentials could not be decrypted") from exc
    decoded = json.loads(raw.decode("utf-8"))
    if not isinstance(decoded, dict):
        raise CredentialsError("Provider credentials payload must be an object")
    return decoded


async def load_credentials(session: AsyncSession, *, tenant_id: str, provider_key: str) -> dict[str, Any] | None:
    """Active credentials for one tenant and provider, or None when none are stored."""
    row = (
        await session.execute(
            select(ProviderCredential).where(
                tenant_predicate(ProviderCredential, tenant_id),
                ProviderCredential.provider_key == provider_key,
                ProviderCredential.is_active.is_(True),
            )
        )
    ).scalar_one_or_none()
    if row is None:
        return None
    return decrypt_credentials(row.encrypted_payload)


async def store_credentials(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider_key: str,
    payload: dict[str, Any],
) -> ProviderCredential:
    row = (
        await session.execute(
            select(ProviderCredential).where(
                tenant_predicate(ProviderCredential, tenant_id),
                ProviderCredential.provider_key == provider_key,
            )
        )
    ).scalar_one_or_none()
    encrypted = encrypt_credentials(payload)
    if row is None:
        row = ProviderCredential(
            tenant_id=tenant_id,
            provider_key=provider_key,
            encrypted_payload=encrypted,
            is_active=True,
        )
        session.add(row)
    else:
        row.encrypted_payload = encrypted
        row.is_active = True
    await session.flush()
    return row
