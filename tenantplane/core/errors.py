from __future__ import annotations


class TenantPlaneError(Exception):
    """Base error for tenantplane."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__doc__ or self.code)
        self.message = message or (self.__doc__ or self.code).strip()


class ValidationError(TenantPlaneError):
    """Malformed input rejected before any side effect."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ConflictError(TenantPlaneError):
    """Registry uniqueness conflict."""

    code = "CONFLICT"
    status_code = 409


class DuplicateTenantError(ConflictError):
    """Tenant slug or external organization already registered."""

    code = "DUPLICATE_TENANT"

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        super().__init__(message)
        # Which unique column collided: "slug" or "external_org_id".
        self.field = field


class ConflictingLinkError(ConflictError):
    """External organization already linked to another tenant."""

    code = "CONFLICTING_LINK"


class InvalidTransitionError(ConflictError):
    """Tenant status transition is not allowed."""

    code = "INVALID_TENANT_TRANSITION"


class TenantNotFoundError(TenantPlaneError):
    """Tenant does not exist."""

    code = "TENANT_NOT_FOUND"
    status_code = 404


class TransientInfrastructureError(TenantPlaneError):
    """Backing store temporarily unavailable; retry with the same key."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class LedgerUnavailableError(TransientInfrastructureError):
    """Idempotency ledger storage is unavailable."""

    code = "LEDGER_UNAVAILABLE"


class StorageUnavailableError(TransientInfrastructureError):
    """Catalog or tenant store dropped the connection mid-operation."""

    code = "STORAGE_UNAVAILABLE"


class SlugExhaustedError(TenantPlaneError):
    """Could not derive a unique tenant slug within the attempt budget."""

    code = "SLUG_EXHAUSTED"
    status_code = 409


class DataStoreAllocationError(TenantPlaneError):
    """Isolated tenant data store could not be allocated."""

    code = "DATA_STORE_ALLOCATION_FAILED"


class WorkspaceInitializationError(TenantPlaneError):
    """Workspace initializer reported a failure."""

    code = "WORKSPACE_INITIALIZATION_FAILED"


class ProvisioningFailedError(TenantPlaneError):
    """Tenant provisioning failed after the registry row was created."""

    code = "PROVISIONING_FAILED"

    def __init__(self, message: str | None = None, *, tenant_id: str | None = None) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


class InvalidSignatureError(TenantPlaneError):
    """Webhook envelope failed signature or timestamp verification."""

    code = "INVALID_SIGNATURE"
    status_code = 400


class MissingWebhookHeadersError(InvalidSignatureError):
    """Webhook envelope is missing signature headers."""

    code = "MISSING_WEBHOOK_HEADERS"


class AuthenticationError(TenantPlaneError):
    """Foreign credential could not be bridged."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class InvalidCredentialError(AuthenticationError):
    """Foreign credential is invalid or expired."""

    code = "INVALID_CREDENTIAL"


class MissingOrganizationError(AuthenticationError):
    """Credential carries no organization claim."""

    code = "MISSING_ORGANIZATION"


class TenantNotProvisionedError(AuthenticationError):
    """No active tenant matches the credential's organization."""

    code = "TENANT_NOT_PROVISIONED"


class LinkageFailureError(AuthenticationError):
    """Downstream user/workspace linkage could not be established."""

    code = "LINKAGE_FAILURE"


class IntegrationUnavailableError(TransientInfrastructureError):
    """External integration is temporarily unavailable."""

    code = "INTEGRATION_UNAVAILABLE"
