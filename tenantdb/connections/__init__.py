"""Per-tenant storage connections.

Key Components:
- ConnectionManager: one long-lived connection per tenant, with idle sweep
- TenantConnection: a tenant's engine, state and bound handles
- build_tenant_url: derive a tenant's isolated database URL
"""

from tenantdb.connections.connection import (
    ConnectionState,
    TenantConnection,
    build_tenant_url,
)
from tenantdb.connections.manager import (
    TENANT_ID_PATTERN,
    ConnectionManager,
    validate_tenant_id,
)

__all__ = [
    "TENANT_ID_PATTERN",
    "ConnectionManager",
    "ConnectionState",
    "TenantConnection",
    "build_tenant_url",
    "validate_tenant_id",
]
