"""tenantdb exceptions."""


class TenantDBError(Exception):
    """Base exception for all tenantdb errors."""


class InvalidTenantId(TenantDBError, ValueError):
    """Tenant identifier is empty or does not match the allowed format."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(
            f"Invalid tenant ID {tenant_id!r}: must be non-empty and contain "
            "only letters, digits, underscores and hyphens"
        )


class TenantConnectionError(TenantDBError):
    """Storage connection for a tenant could not be established."""

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(
            message
            or f"Failed to establish database connection for tenant {tenant_id}"
        )


class TenantConnectionTimeout(TenantConnectionError):
    """Opening a tenant connection did not finish within the timeout."""

    def __init__(self, tenant_id: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            tenant_id,
            f"Connection timeout for tenant {tenant_id} after {timeout:g}s",
        )


class InvalidRegistration(TenantDBError):
    """Schema registration rejected (empty or malformed name or schema)."""


class ModelNotFound(TenantDBError):
    """Requested logical model is not available for the tenant."""

    def __init__(self, tenant_id: str, model_name: str) -> None:
        self.tenant_id = tenant_id
        self.model_name = model_name
        super().__init__(f"Model {model_name} not found for tenant {tenant_id}")


class CacheTierUnavailable(TenantDBError):
    """Tier-2 cache call failed.

    Internal only: the tiered cache converts it to a miss or a no-op and
    never lets it reach callers.
    """


class MaterializationError(TenantDBError):
    """Binding a schema to a tenant connection failed."""

    def __init__(self, tenant_id: str, model_name: str, cause: BaseException) -> None:
        self.tenant_id = tenant_id
        self.model_name = model_name
        super().__init__(
            f"Failed to materialize model {model_name} for tenant {tenant_id}: {cause}"
        )


class RegistryClosedError(TenantDBError):
    """The registry has been shut down and can no longer be used."""
