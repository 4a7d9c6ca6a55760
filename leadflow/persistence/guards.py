from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import Select

from leadflow.core.config import get_settings


_S = TypeVar("_S", bound=Select)


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a ledger query or row escapes its tenant scope.
    message: str


def require_tenant_id(tenant_id: str | None) -> str:
    # Every pipeline read and write must carry a tenant id.
    if not tenant_id and get_settings().authz_require_tenant_predicate:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return tenant_id or ""


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    return model.tenant_id == require_tenant_id(tenant_id)


def tenant_scoped(stmt: _S, model: Any, tenant_id: str) -> _S:
    return stmt.where(tenant_predicate(model, tenant_id))


def ensure_row_tenant(row: Any, tenant_id: str) -> Any:
    # Rows fetched by primary key are re-checked so a foreign id never leaks across tenants.
    if row is None:
        return None
    if getattr(row, "tenant_id", None) != require_tenant_id(tenant_id):
        raise TenantPredicateError(f"{type(row).__name__} does not belong to tenant")
    return row
