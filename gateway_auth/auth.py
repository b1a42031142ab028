"""
Authentication arbitration: which credential governs a request.

Every privileged request carries a credential bundle. The arbitrator picks
exactly one authentication method by fixed precedence and returns a single
AuthResult, the only value the rest of the server trusts:

    1. OAuth claims (access token + email)  -> domain allow-list check
    2. MCP access token                      -> TokenLifecycleManager.verify()
    3. Nothing                               -> AuthenticationRequired

OAuth branch:
    The OAuth access token itself is not verified here. That trust boundary
    is the OAuth provider's callback, which produced the signed session the
    claims were read from (see session.py). This layer enforces domain policy
    only: the email must end with the literal "@" + hosted_domain.

    Matching is an exact suffix match on the raw string, with no Unicode
    normalization and no case folding. That single rule rejects lookalike
    domains (evil-x.com), other TLDs (x.co), the domain in the local part
    (x@evil.com), subdomains (evil.x.com, not implicitly trusted) and any
    invisible or control character appended after the domain.

MCP token branch:
    Failures surface as TokenMalformed / TokenNotFound / TokenRevoked with
    fixed generic messages. The submitted token is never echoed.

Isolation:
    The downstream data-API key, the OAuth client secret and the cookie key
    are read only by components outside this module. Nothing here reads them
    and an AuthResult never contains them.
"""

from dataclasses import asdict, dataclass
from typing import Any, Literal, Mapping

from gateway_auth.audit import AuditSink, AuthEvent
from gateway_auth.errors import (
    AuthenticationRequired,
    AuthError,
    DomainRejected,
    TokenMalformed,
    TokenNotFound,
    TokenRevoked,
)
from gateway_auth.tokens import TokenLifecycleManager

AuthMethod = Literal["oauth", "mcp-token", "none"]

_VALIDATION_ERRORS: dict[str, type[AuthError]] = {
    "malformed": TokenMalformed,
    "not_found": TokenNotFound,
    "revoked": TokenRevoked,
}


@dataclass(frozen=True)
class CredentialBundle:
    """
    Credentials presented with a request.

    Only these four fields exist. Anything else a client sends (for example
    its own copy of a data-API key) is dropped by from_mapping() and can't
    influence authentication.
    """

    access_token: str | None = None
    email: str | None = None
    name: str | None = None
    mcp_access_token: str | None = None

    @classmethod
    def from_mapping(cls, props: Mapping[str, Any] | None) -> "CredentialBundle":
        """Build a bundle from loosely-typed props, keeping only known string fields."""
        props = props or {}

        def _str(key: str) -> str | None:
            value = props.get(key)
            return value if isinstance(value, str) else None

        return cls(
            access_token=_str("access_token"),
            email=_str("email"),
            name=_str("name"),
            mcp_access_token=_str("mcp_access_token"),
        )

    @property
    def has_oauth_claims(self) -> bool:
        return bool(self.access_token) and bool(self.email)


@dataclass(frozen=True)
class AuthUser:
    """
    Authenticated principal.

    For OAuth, id is the email and name/email are the provider's values,
    stored verbatim (never interpreted as markup). For MCP tokens, id is the
    owning user id and token_id identifies the token used.
    """

    id: str
    email: str | None = None
    name: str | None = None
    token_id: str | None = None


@dataclass(frozen=True)
class AuthResult:
    authenticated: bool
    method: AuthMethod
    user: AuthUser

    def to_dict(self) -> dict:
        return asdict(self)


def matches_hosted_domain(email: str | None, hosted_domain: str) -> bool:
    """Exact, case-sensitive suffix match of email against "@" + hosted_domain."""
    if not email or not hosted_domain:
        return False
    return email.endswith(f"@{hosted_domain}")


def validate_admin_access(email: str | None, allowed_domain: str) -> bool:
    """Whether an already-authenticated OAuth user may use admin operations."""
    return matches_hosted_domain(email, allowed_domain)


def get_user_identifier(result: AuthResult) -> str:
    """Human-readable identity for log lines."""
    if result.method == "oauth":
        return result.user.name or result.user.email or "OAuth User"
    return f"MCP Token ({result.user.token_id or 'unknown'})"


class AuthenticationArbitrator:
    """
    Decides the authentication method for a request and enforces its policy.

    Args:
        hosted_domain: The single organizational email domain allowed for
                       OAuth users (e.g. "agile6.com")
        tokens: Lifecycle manager used to verify MCP access tokens
        audit: Sink receiving one "authentication" event per call
    """

    def __init__(
        self,
        hosted_domain: str,
        tokens: TokenLifecycleManager,
        audit: AuditSink | None = None,
    ) -> None:
        self.hosted_domain = hosted_domain
        self._tokens = tokens
        self._audit = audit

    async def validate_authentication(
        self,
        credentials: CredentialBundle | None,
        client_ip: str = "unknown",
    ) -> AuthResult:
        """
        Authenticate a request.

        Returns:
            AuthResult for the single method that applied

        Raises:
            AuthenticationRequired: No usable credentials
            DomainRejected: OAuth email outside the hosted domain
            TokenMalformed / TokenNotFound / TokenRevoked: MCP token rejected
            StorageUnavailable: MCP token presented but no store configured
        """
        # Step 1: Pick exactly one method. OAuth claims win over an MCP token,
        # and a rejected OAuth attempt never falls through to the token.
        credentials = credentials or CredentialBundle()
        method = self._select_method(credentials)

        # Step 2: Run that method; every failure is audited before it propagates
        try:
            if method == "oauth":
                result = self._authenticate_oauth(credentials)
            elif method == "mcp-token":
                result = await self._authenticate_mcp_token(credentials.mcp_access_token, client_ip)
            else:
                raise AuthenticationRequired()
        except AuthError as exc:
            self._record(
                AuthEvent(
                    event_type="authentication",
                    success=False,
                    method=method,
                    user_email=credentials.email if method == "oauth" else None,
                    client_ip=client_ip,
                    error_code=exc.code,
                    error_message=exc.message,
                )
            )
            raise

        # Step 3: Audit the accepted identity
        self._record(
            AuthEvent(
                event_type="authentication",
                success=True,
                method=result.method,
                user_id=result.user.id,
                user_email=result.user.email,
                user_name=result.user.name,
                token_id=result.user.token_id,
                client_ip=client_ip,
            )
        )
        return result

    @staticmethod
    def _select_method(credentials: CredentialBundle) -> AuthMethod:
        if credentials.has_oauth_claims:
            return "oauth"
        if credentials.mcp_access_token:
            return "mcp-token"
        return "none"

    def _authenticate_oauth(self, credentials: CredentialBundle) -> AuthResult:
        if not matches_hosted_domain(credentials.email, self.hosted_domain):
            raise DomainRejected(self.hosted_domain)

        return AuthResult(
            authenticated=True,
            method="oauth",
            user=AuthUser(id=credentials.email, email=credentials.email, name=credentials.name),
        )

    async def _authenticate_mcp_token(self, token: str, client_ip: str) -> AuthResult:
        validation = await self._tokens.verify(token, request_ip=client_ip)
        if not validation.valid:
            raise _VALIDATION_ERRORS.get(validation.reason, TokenNotFound)()

        return AuthResult(
            authenticated=True,
            method="mcp-token",
            user=AuthUser(id=validation.user_id, token_id=validation.token_id),
        )

    def _record(self, event: AuthEvent) -> None:
        if self._audit is not None:
            self._audit.record(event)
