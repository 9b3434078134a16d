"""
Error taxonomy for qbbroker.

Every failure surfaced by the token subsystem or the accounting API boundary
is one of the classes below. Each carries a stable ``code``, a ``category``
and a ``retryable`` flag so the calling tool layer can decide between
auto-retry, "try again later" and "re-authenticate".

Classification is explicit: boundary call sites pass the raw HTTP status and
payload to :func:`classify_token_error` or :func:`classify_api_error` and
raise whatever comes back.
"""

from __future__ import annotations

import json
from typing import Any


class BrokerError(Exception):
    """Base class for all qbbroker errors."""

    code: str = "UNKNOWN_ERROR"
    category: str = "unknown"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a tool response."""
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category,
            "retryable": self.retryable,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def to_user_message(self) -> str:
        suffix = " (you can try again)" if self.retryable else ""
        return f"{self.message}{suffix}"


# ---------------------------------------------------------------------------
# Configuration & authentication
# ---------------------------------------------------------------------------


class ConfigurationError(BrokerError):
    code = "CONFIGURATION_ERROR"
    category = "configuration"


class AuthenticationRequiredError(BrokerError):
    """No usable credential for the requested tenant.

    Kept distinct from every other error so callers can offer
    "authenticate now" instead of a generic failure.
    """

    code = "AUTHENTICATION_REQUIRED"
    category = "authentication"


class TokenRefreshError(BrokerError):
    """Transient failure while refreshing an access token."""

    code = "TOKEN_REFRESH_ERROR"
    category = "token"
    retryable = True


class ReauthorizationRequiredError(BrokerError):
    """The provider rejected the refresh token; the stored record was cleared."""

    code = "REAUTHORIZATION_REQUIRED"
    category = "token"


class TokenExchangeError(BrokerError):
    """The authorization code could not be exchanged for tokens."""

    code = "TOKEN_EXCHANGE_ERROR"
    category = "oauth"


class OAuthCallbackError(BrokerError):
    """CSRF mismatch, provider-reported denial or malformed callback."""

    code = "OAUTH_CALLBACK_ERROR"
    category = "oauth"

    def __init__(
        self,
        message: str,
        *,
        oauth_error: str | None = None,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        meta = {"oauth_error": oauth_error, **(metadata or {})}
        super().__init__(message, metadata=meta, cause=cause)
        self.oauth_error = oauth_error


class AuthorizationTimeoutError(OAuthCallbackError):
    """The user did not complete authorization in time."""

    code = "AUTHORIZATION_TIMEOUT"


# ---------------------------------------------------------------------------
# Listener resources
# ---------------------------------------------------------------------------


class ListenerStateError(BrokerError):
    code = "LISTENER_STATE_ERROR"
    category = "listener"


class PortRangeExhaustedError(BrokerError):
    code = "PORT_RANGE_EXHAUSTED"
    category = "listener"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(BrokerError):
    code = "STORAGE_ERROR"
    category = "storage"


# ---------------------------------------------------------------------------
# Accounting API boundary
# ---------------------------------------------------------------------------


class RateLimitError(BrokerError):
    code = "RATE_LIMIT_ERROR"
    category = "api"
    retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)


class NetworkError(BrokerError):
    code = "NETWORK_ERROR"
    category = "network"
    retryable = True


class QuickBooksAPIError(BrokerError):
    code = "QUICKBOOKS_API_ERROR"
    category = "api"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        fault: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        meta = {"status_code": status_code, **(metadata or {})}
        super().__init__(message, metadata=meta, cause=cause)
        self.status_code = status_code
        self.fault = fault


class CompanyError(BrokerError):
    code = "COMPANY_ERROR"
    category = "company"


class CompanyNotFoundError(CompanyError):
    code = "COMPANY_NOT_FOUND"


class AmbiguousCompanyError(CompanyError):
    code = "COMPANY_AMBIGUOUS"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_token_error(
    status_code: int,
    payload: dict[str, Any] | None,
    operation: str,
) -> BrokerError:
    """Map a failed token-endpoint response to an error.

    ``operation`` is ``"refresh_token"`` or ``"authorization_code"``.
    """
    payload = payload or {}
    oauth_error = payload.get("error")
    description = payload.get("error_description") or ""
    meta = {"operation": operation, "status_code": status_code, "oauth_error": oauth_error}

    if oauth_error == "invalid_client":
        return ConfigurationError(
            "QuickBooks rejected the client credentials. "
            "Check INTUIT_CLIENT_ID and INTUIT_CLIENT_SECRET.",
            metadata=meta,
        )

    if operation == "refresh_token":
        if oauth_error == "invalid_grant":
            return ReauthorizationRequiredError(
                "Refresh token expired or revoked. Please reconnect to QuickBooks.",
                metadata=meta,
            )
        return TokenRefreshError(
            f"Token refresh failed ({status_code}): {oauth_error or description or 'unknown error'}",
            metadata=meta,
        )

    return TokenExchangeError(
        f"Authorization code exchange failed ({status_code}): "
        f"{oauth_error or description or 'unknown error'}",
        metadata=meta,
    )


def _fault_message(payload: dict[str, Any]) -> str | None:
    fault = payload.get("Fault") or payload.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    parts = [e.get("Message") or e.get("Detail") or e.get("message") or "" for e in errors]
    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else None


def classify_api_error(status_code: int, payload: dict[str, Any] | None) -> BrokerError:
    """Map a failed accounting-API response to an error."""
    payload = payload or {}
    if status_code == 401:
        return AuthenticationRequiredError(
            "QuickBooks rejected the access token. "
            "Please reconnect to QuickBooks using the authenticate tool.",
            metadata={"status_code": status_code},
        )
    if status_code == 429:
        return RateLimitError(metadata={"status_code": status_code})
    if status_code == 403:
        return QuickBooksAPIError(
            "Access denied. Please check your QuickBooks permissions.",
            status_code=status_code,
            fault=payload.get("Fault"),
        )

    message = _fault_message(payload) or f"QuickBooks API error ({status_code})"
    return QuickBooksAPIError(message, status_code=status_code, fault=payload.get("Fault"))


__all__ = [
    "AmbiguousCompanyError",
    "AuthenticationRequiredError",
    "AuthorizationTimeoutError",
    "BrokerError",
    "CompanyError",
    "CompanyNotFoundError",
    "ConfigurationError",
    "ListenerStateError",
    "NetworkError",
    "OAuthCallbackError",
    "PortRangeExhaustedError",
    "QuickBooksAPIError",
    "RateLimitError",
    "ReauthorizationRequiredError",
    "StorageError",
    "TokenExchangeError",
    "TokenRefreshError",
    "classify_api_error",
    "classify_token_error",
]
