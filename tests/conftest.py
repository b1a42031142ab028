"""
Shared test fixtures for the MCP gateway auth test suite.

Key fixtures:
- memory_store / token_manager / arbitrator: the auth core wired to an
  in-memory store, with a capturing audit sink instead of the logging one
- make_session_token: factory for OAuth session tokens with any claims
- make_auth_header: the same, wrapped as "Bearer <token>"

Testing approach:
- test_codec.py, test_store.py: pure primitives and storage adapters
- test_tokens.py, test_admin.py: the token lifecycle against a real
  MemoryTokenStore (no mocking of the code under test)
- test_auth.py: arbitration and domain policy, incl. spoofing attempts
- test_session.py, test_config.py: session tokens and settings validation
- test_tools.py: the full MCP server over in-memory HTTP
"""

import datetime

import jwt
import pytest

from gateway_auth.audit import AuthEvent
from gateway_auth.auth import AuthenticationArbitrator
from gateway_auth.config import settings
from gateway_auth.store import MemoryTokenStore
from gateway_auth.tokens import TokenLifecycleManager

# Must match settings.cookie_encryption_key so that session tokens generated
# in tests are accepted by the server.
TEST_SECRET = settings.cookie_encryption_key
TEST_ALGORITHM = settings.session_algorithm
HOSTED_DOMAIN = "agile6.com"


class CapturingAuditSink:
    """Audit sink that keeps every event in memory for assertions."""

    def __init__(self) -> None:
        self.events: list[AuthEvent] = []

    def record(self, event: AuthEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[AuthEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def audit_sink() -> CapturingAuditSink:
    return CapturingAuditSink()


@pytest.fixture
def memory_store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture
async def token_manager(memory_store, audit_sink):
    manager = TokenLifecycleManager(memory_store, audit=audit_sink)
    yield manager
    await manager.flush_usage_updates()


@pytest.fixture
def arbitrator(token_manager, audit_sink) -> AuthenticationArbitrator:
    return AuthenticationArbitrator(HOSTED_DOMAIN, token_manager, audit=audit_sink)


@pytest.fixture
def make_session_token():
    """
    Factory fixture to generate OAuth session tokens for testing.

    Usage in tests:
        def test_something(make_session_token):
            token = make_session_token(email="jane@agile6.com")
    """

    def _make_session_token(
        email: str = "jane@agile6.com",
        name: str | None = "Jane Doe",
        access_token: str = "oauth-access-token",
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_email: bool = True,
        include_access_token: bool = True,
    ) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {"iat": now}

        if include_email:
            payload["email"] = email
        if include_access_token:
            payload["access_token"] = access_token
        if name is not None:
            payload["name"] = name
        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)
        if extra_claims:
            payload.update(extra_claims)

        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_session_token


@pytest.fixture
def make_auth_header(make_session_token):
    """Convenience fixture that returns a full "Bearer <session token>" string."""

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_session_token(**kwargs)}"

    return _make_auth_header
