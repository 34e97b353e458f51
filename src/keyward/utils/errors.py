"""Custom exceptions for keyward.

This module provides structured error handling with specific exception types
for each failure scenario. All exceptions inherit from KeywardError and carry
a stable ``status`` string and ``exit_code`` so automated callers can branch
on them without parsing messages.
"""
from typing import Optional, Sequence


class KeywardError(Exception):
    """Base exception for all keyward errors.

    Attributes:
        message: Human-readable error description.
        account: Optional account identifier related to the error.
    """

    status = "error"
    exit_code = 1

    def __init__(self, message: str, account: Optional[str] = None) -> None:
        self.message = message
        self.account = account
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the error message, optionally including the account."""
        if self.account:
            return f"{self.message} (account: {self.account})"
        return self.message


class AuthRequiredError(KeywardError):
    """Raised when no account resolves or no usable credential exists."""

    status = "auth_required"
    exit_code = 10


class InvalidGrantError(KeywardError):
    """Raised when the provider rejects a refresh token or authorization code."""

    status = "invalid_grant"
    exit_code = 11


class StateMismatchError(KeywardError):
    """Raised when the anti-forgery state of a callback does not match."""

    status = "state_mismatch"
    exit_code = 12


class EmptyTokenError(KeywardError):
    """Raised when a token response lacks a required token field."""

    status = "empty_token"
    exit_code = 13


class BackendUnavailableError(KeywardError):
    """Raised when no secret backend can be opened."""

    status = "backend_unavailable"
    exit_code = 14


class ScopeMismatchError(KeywardError):
    """Raised when a stored credential was not granted the requested scopes.

    Attributes:
        missing: Scopes that the credential lacks.
    """

    status = "scope_mismatch"
    exit_code = 15

    def __init__(
        self,
        message: str,
        missing: Sequence[str] = (),
        account: Optional[str] = None,
    ) -> None:
        self.missing = tuple(missing)
        super().__init__(message, account)


class UnknownServiceError(KeywardError):
    """Raised when a service has no entry in the scope registry."""

    status = "unknown_service"
    exit_code = 16

    def __init__(self, service: str, known: Sequence[str]) -> None:
        self.service = service
        self.known = list(known)
        message = f"Unknown service '{service}'. Known: {', '.join(self.known)}"
        super().__init__(message)


class OAuthProviderError(KeywardError):
    """Raised when the authorization server answers with an error.

    Attributes:
        error: The OAuth error code returned by the provider.
        description: Optional error description from the provider.
    """

    status = "provider_error"
    exit_code = 17

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        account: Optional[str] = None,
    ) -> None:
        self.error = error
        self.description = description
        message = f"Authorization server returned '{error}'"
        if description:
            message = f"{message}: {description}"
        super().__init__(message, account)


class AuthorizationTimeoutError(KeywardError):
    """Raised when the interactive callback does not arrive in time."""

    status = "authorization_timeout"
    exit_code = 18


class AuthorizationCancelledError(KeywardError):
    """Raised when the operator cancels an authorization flow."""

    status = "authorization_cancelled"
    exit_code = 19


class RefreshLockTimeoutError(KeywardError):
    """Raised when another process holds the refresh lock and left no fresh token."""

    status = "refresh_lock_timeout"
    exit_code = 20


class SecretStorageError(KeywardError):
    """Raised when a secret backend fails to read or write."""

    status = "storage_error"
    exit_code = 21


class InvalidAliasError(KeywardError):
    """Raised when an alias name is not usable."""

    status = "invalid_alias"
    exit_code = 22


class ClientConfigError(KeywardError):
    """Raised when OAuth client credentials are missing or malformed."""

    status = "client_config"
    exit_code = 23


class AccountMismatchError(KeywardError):
    """Raised when a login was authorized by a different account than requested."""

    status = "account_mismatch"
    exit_code = 24


# Standard error message format helper
def format_error(action: str, error: Exception) -> str:
    """Format an error message consistently.

    Args:
        action: The action that failed (e.g., "Login", "Refresh").
        error: The exception that occurred.

    Returns:
        Formatted error string.
    """
    if isinstance(error, KeywardError):
        return f"{action} failed [{error.status}]: {error.format_message()}"
    return f"{action} failed: {str(error)}"
