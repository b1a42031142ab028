"""
Classified authentication errors.

Every failure the authentication subsystem surfaces to a caller is one of
these exception types, each with a fixed, generic message. Messages never
include the submitted token, storage key names, secrets or stack traces,
so a failed attempt tells an attacker nothing beyond "rejected".

    AuthError
    ├── AuthenticationRequired   no credentials presented
    ├── DomainRejected           OAuth email outside the hosted domain
    ├── TokenMalformed           MCP token fails the structural check
    ├── TokenNotFound            no record for the token's hash
    ├── TokenRevoked             record exists but has been revoked
    └── StorageUnavailable       token store not configured (503)
"""


class AuthError(Exception):
    """
    Base class for authentication failures.

    Attributes:
        message: Generic, caller-safe description
        status_code: HTTP status code to return (401 for auth failures)
        code: Stable machine-readable identifier used in audit events
    """

    code = "auth_error"
    default_message = "Unauthorized"

    def __init__(self, message: str | None = None, status_code: int = 401):
        self.message = message or self.default_message
        self.status_code = status_code
        super().__init__(self.message)


class AuthenticationRequired(AuthError):
    code = "authentication_required"
    default_message = (
        "Unauthorized: Authentication required. "
        "Use OAuth or provide the x-mcp-access-token header."
    )


class DomainRejected(AuthError):
    code = "domain_rejected"

    def __init__(self, hosted_domain: str):
        super().__init__(f"Only @{hosted_domain} accounts are allowed", status_code=403)


class TokenMalformed(AuthError):
    code = "token_malformed"
    default_message = "Unauthorized: Invalid token format."


class TokenNotFound(AuthError):
    code = "token_not_found"
    default_message = "Unauthorized: Token not found."


class TokenRevoked(AuthError):
    code = "token_revoked"
    default_message = "Unauthorized: Token has been revoked."


class StorageUnavailable(AuthError):
    """Raised when a token operation runs without a configured backing store."""

    code = "storage_unavailable"
    default_message = "Token storage is not configured"

    def __init__(self, message: str | None = None):
        super().__init__(message, status_code=503)


class ConfigurationError(Exception):
    """Raised at startup when the settings fail validation."""
