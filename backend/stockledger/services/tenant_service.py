"""
Tenant context: who is acting, on behalf of which tenant.

WHY: Tenant resolution happens exactly once, at the API boundary. Every
core operation receives an explicit TenantContext instead of re-deriving
the tenant from request state inside business logic.

USAGE:
    from stockledger.services.tenant_service import TenantContext

    context = TenantContext(tenant_id=1, actor_id=7)
    order = checkout_service.checkout(context, items=[...])

Inside a Flask request, @require_tenant stores the resolved context on
g.tenant_context for the route handler.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import TenantContextError
from ..extensions import db
from ..models import Tenant

TENANT_HEADER = "X-Tenant-ID"
ACTOR_HEADER = "X-Actor-ID"


@dataclass(frozen=True)
class TenantContext:
    tenant_id: int
    actor_id: int | None = None


def _parse_id(raw: str | None, header: str) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        raise TenantContextError(f"{header} must be an integer")
    if value <= 0:
        raise TenantContextError(f"{header} must be positive")
    return value


def resolve_tenant_context(headers) -> TenantContext:
    """
    Build the TenantContext from request headers.

    Authentication is done upstream; this only checks that the tenant
    exists and is active.
    """
    tenant_id = _parse_id(headers.get(TENANT_HEADER), TENANT_HEADER)
    if tenant_id is None:
        raise TenantContextError("Tenant context not established")

    tenant = db.session.query(Tenant).filter_by(id=tenant_id).first()
    if tenant is None or not tenant.is_active:
        raise TenantContextError("Tenant not found or inactive", details={"tenant_id": tenant_id})

    actor_id = _parse_id(headers.get(ACTOR_HEADER), ACTOR_HEADER)
    return TenantContext(tenant_id=tenant_id, actor_id=actor_id)

