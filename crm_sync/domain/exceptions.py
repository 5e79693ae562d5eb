"""Domain exceptions for the sync service.

Every error the API surfaces derives from CrmSyncException; the
presentation layer maps ``error_code`` to an HTTP status.
"""

from typing import Any


class CrmSyncException(Exception):
    """Base exception for all service errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code.
        details: Additional error context (e.g. provider, credential_id).
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON error body."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationException(CrmSyncException):
    """Raised when input validation fails (e.g. invalid format or range)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        details = {"field": field} if field else {}
        super().__init__(message, "VALIDATION_ERROR", details)


class ResourceNotFoundException(CrmSyncException):
    """Raised when a requested resource does not exist."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            "RESOURCE_NOT_FOUND",
            {"resource_type": resource_type, "resource_id": resource_id},
        )


class UnsupportedProviderException(CrmSyncException):
    """Raised for a provider (or provider feature) the service does not handle."""

    def __init__(self, provider: str, feature: str | None = None) -> None:
        message = f"Unsupported provider: {provider}"
        if feature:
            message = f"Provider {provider} does not support {feature}"
        super().__init__(
            message,
            "UNSUPPORTED_PROVIDER",
            {"provider": provider, "feature": feature},
        )


class NoCredentialException(CrmSyncException):
    """Raised when no credential exists for the requested account."""

    def __init__(self, owner_id: str, provider: str, email: str) -> None:
        super().__init__(
            f"No credential for {provider} account {email}",
            "NO_CREDENTIAL",
            {"owner_id": owner_id, "provider": provider, "email": email},
        )


class ReauthRequiredException(CrmSyncException):
    """Raised when the account must be reconnected by the user.

    Terminal: no refresh token, the provider revoked the grant, or
    refresh kept failing past the configured threshold.
    """

    def __init__(self, credential_id: str, reason: str) -> None:
        super().__init__(
            f"Reconnect required: {reason}",
            "REAUTH_REQUIRED",
            {"credential_id": credential_id, "reason": reason},
        )


class ProviderRefreshFailedException(CrmSyncException):
    """Raised when a refresh attempt failed but the credential may still recover."""

    def __init__(
        self, credential_id: str, provider: str, status: int | None = None
    ) -> None:
        super().__init__(
            f"Token refresh failed for {provider} (status={status})",
            "PROVIDER_REFRESH_FAILED",
            {"credential_id": credential_id, "provider": provider, "status": status},
        )


class ProviderApiError(CrmSyncException):
    """Raised for any non-2xx, transport failure or malformed provider payload.

    ``status`` is the raw HTTP status, or None when no response was received
    or the payload could not be decoded.
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        status: int | None = None,
        message: str | None = None,
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.status = status
        super().__init__(
            message or f"{provider} {operation} failed (status={status})",
            "PROVIDER_API_ERROR",
            {"provider": provider, "operation": operation, "status": status},
        )

    @property
    def retryable(self) -> bool:
        """True for transport errors, throttling and server errors."""
        if self.status is None:
            return self.details.get("malformed") is not True
        return self.status == 429 or self.status >= 500

    @classmethod
    def malformed(
        cls, provider: str, operation: str, reason: str
    ) -> "ProviderApiError":
        """Build the error for a payload that could not be normalized."""
        err = cls(provider, operation, None, f"{provider} {operation}: malformed payload ({reason})")
        err.details["malformed"] = True
        return err


class MappingConflictException(CrmSyncException):
    """Raised when a mapping upsert would violate a uniqueness invariant."""

    def __init__(self, provider: str, external_id: str | None, record_id: str | None) -> None:
        super().__init__(
            f"Mapping conflict for {provider} external_id={external_id} record_id={record_id}",
            "MAPPING_CONFLICT",
            {"provider": provider, "external_id": external_id, "record_id": record_id},
        )


class SyncInProgressException(CrmSyncException):
    """Raised when a sync pass is requested while one is already running."""

    def __init__(self, credential_id: str) -> None:
        super().__init__(
            f"A sync is already running for account {credential_id}",
            "SYNC_IN_PROGRESS",
            {"credential_id": credential_id},
        )


class SqlNotConfiguredException(CrmSyncException):
    """Raised when a SQL-backed endpoint is used but DATABASE_URL is not set."""

    def __init__(
        self,
        message: str = "SQL database not configured. Set DATABASE_URL (postgresql+asyncpg://...).",
    ) -> None:
        super().__init__(message, "SERVICE_UNAVAILABLE")


class OAuthTokenError(CrmSyncException):
    """Raised when a provider token endpoint rejects a grant or cannot be reached.

    ``oauth_error`` is the RFC 6749 ``error`` field (e.g. ``invalid_grant``)
    when the provider returned one.
    """

    def __init__(
        self,
        provider: str,
        grant_type: str,
        status: int | None = None,
        oauth_error: str | None = None,
    ) -> None:
        self.provider = provider
        self.status = status
        self.oauth_error = oauth_error
        super().__init__(
            f"{provider} {grant_type} grant failed (status={status}, error={oauth_error})",
            "OAUTH_TOKEN_ERROR",
            {"provider": provider, "grant_type": grant_type, "status": status, "error": oauth_error},
        )

    @property
    def is_invalid_grant(self) -> bool:
        return self.oauth_error == "invalid_grant"

    @property
    def retryable(self) -> bool:
        if self.is_invalid_grant:
            return False
        return self.status is None or self.status == 429 or self.status >= 500
