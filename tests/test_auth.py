"""
Unit tests for authentication arbitration (gateway_auth/auth.py).

These tests exercise AuthenticationArbitrator.validate_authentication()
directly, with the token lifecycle wired to an in-memory store:

1. Method precedence (OAuth > MCP token > nothing)
2. Hosted-domain allow-list, including spoofing attempts
3. MCP token failures and their generic messages
4. Audit events recorded for every decision

Each rejection test asserts the exact caller-facing message, because those
messages are part of the contract: they must never vary with the input.
"""

import json

import pytest

from gateway_auth.auth import (
    AuthResult,
    AuthUser,
    CredentialBundle,
    get_user_identifier,
    matches_hosted_domain,
    validate_admin_access,
)
from gateway_auth.errors import (
    AuthenticationRequired,
    DomainRejected,
    TokenMalformed,
    TokenNotFound,
    TokenRevoked,
)


def oauth(email: str, name: str | None = "Jane Doe", **extra) -> CredentialBundle:
    return CredentialBundle(access_token="oauth-access-token", email=email, name=name, **extra)


class TestOAuthBranch:
    """Tests for the OAuth branch and its domain allow-list."""

    async def test_hosted_domain_user_is_accepted(self, arbitrator):
        result = await arbitrator.validate_authentication(oauth("jane@agile6.com"))

        assert result.authenticated is True
        assert result.method == "oauth"
        assert result.user == AuthUser(id="jane@agile6.com", email="jane@agile6.com", name="Jane Doe")

    @pytest.mark.parametrize(
        "email",
        [
            "attacker@evil-agile6.com",  # lookalike
            "attacker@agile6.co",  # other TLD
            "agile6.com@evil.com",  # domain in local part
            "attacker@evil.agile6.com",  # subdomain
            "attacker@agile6.com.evil.com",  # domain as a label prefix
            "attacker@agile6.com\u200b",  # zero-width space
            "attacker@agile6.com\x00",  # null byte
            "attacker@agile6.com ",  # trailing whitespace
            "attacker@agile6.com\n",  # trailing newline
            "attacker@\u0430gile6.com",  # Cyrillic 'a'
            "Jane@AGILE6.COM",  # no case folding
            "jane@agile6com",
        ],
    )
    async def test_domain_spoofing_is_rejected(self, arbitrator, email):
        """Anything other than a literal "@agile6.com" suffix is rejected."""
        with pytest.raises(DomainRejected) as exc_info:
            await arbitrator.validate_authentication(oauth(email))

        assert exc_info.value.message == "Only @agile6.com accounts are allowed"
        assert exc_info.value.status_code == 403

    async def test_rejection_message_does_not_echo_email(self, arbitrator):
        with pytest.raises(DomainRejected) as exc_info:
            await arbitrator.validate_authentication(oauth("someone@evil.com"))

        assert "someone" not in exc_info.value.message
        assert "evil.com" not in exc_info.value.message

    async def test_markup_in_name_is_stored_verbatim(self, arbitrator):
        name = "<script>alert('xss')</script>"

        result = await arbitrator.validate_authentication(oauth("jane@agile6.com", name=name))

        assert result.user.name == name

    async def test_access_token_without_email_is_not_oauth(self, arbitrator):
        credentials = CredentialBundle(access_token="oauth-access-token")

        with pytest.raises(AuthenticationRequired):
            await arbitrator.validate_authentication(credentials)

    async def test_email_without_access_token_is_not_oauth(self, arbitrator):
        credentials = CredentialBundle(email="jane@agile6.com")

        with pytest.raises(AuthenticationRequired):
            await arbitrator.validate_authentication(credentials)


class TestMcpTokenBranch:
    """Tests for the MCP access token branch."""

    async def test_valid_token_is_accepted(self, arbitrator, token_manager):
        generated = await token_manager.generate("ci-agent", "CI")

        result = await arbitrator.validate_authentication(
            CredentialBundle(mcp_access_token=generated.token), client_ip="10.1.2.3"
        )

        assert result.authenticated is True
        assert result.method == "mcp-token"
        assert result.user == AuthUser(id="ci-agent", token_id=generated.token_id)

    async def test_malformed_token(self, arbitrator):
        with pytest.raises(TokenMalformed) as exc_info:
            await arbitrator.validate_authentication(CredentialBundle(mcp_access_token="mcp_v1_<script>"))

        assert exc_info.value.message == "Unauthorized: Invalid token format."
        assert exc_info.value.status_code == 401

    async def test_unknown_token(self, arbitrator):
        token = "mcp_v1_" + "B" * 43

        with pytest.raises(TokenNotFound) as exc_info:
            await arbitrator.validate_authentication(CredentialBundle(mcp_access_token=token))

        assert exc_info.value.message == "Unauthorized: Token not found."
        assert token not in str(exc_info.value)

    async def test_revoked_token(self, arbitrator, token_manager):
        generated = await token_manager.generate("ci-agent", "CI")
        await token_manager.revoke(generated.token_id, "compromised")

        with pytest.raises(TokenRevoked) as exc_info:
            await arbitrator.validate_authentication(CredentialBundle(mcp_access_token=generated.token))

        assert exc_info.value.message == "Unauthorized: Token has been revoked."
        assert "compromised" not in exc_info.value.message


class TestPrecedence:
    """Exactly one branch runs: OAuth, then MCP token, then nothing."""

    async def test_oauth_wins_over_mcp_token(self, arbitrator, token_manager):
        generated = await token_manager.generate("ci-agent", "CI")

        result = await arbitrator.validate_authentication(
            oauth("jane@agile6.com", mcp_access_token=generated.token)
        )

        assert result.method == "oauth"
        assert result.user.token_id is None

    async def test_rejected_oauth_does_not_fall_back_to_token(self, arbitrator, token_manager):
        generated = await token_manager.generate("ci-agent", "CI")

        with pytest.raises(DomainRejected):
            await arbitrator.validate_authentication(
                oauth("attacker@evil.com", mcp_access_token=generated.token)
            )

    @pytest.mark.parametrize("credentials", [None, CredentialBundle(), CredentialBundle(name="Jane")])
    async def test_no_credentials(self, arbitrator, credentials):
        with pytest.raises(AuthenticationRequired) as exc_info:
            await arbitrator.validate_authentication(credentials)

        assert exc_info.value.message == (
            "Unauthorized: Authentication required. Use OAuth or provide the x-mcp-access-token header."
        )

    async def test_empty_mcp_token_counts_as_absent(self, arbitrator):
        with pytest.raises(AuthenticationRequired):
            await arbitrator.validate_authentication(CredentialBundle(mcp_access_token=""))


class TestCredentialBundle:
    def test_from_mapping_keeps_known_string_fields(self):
        bundle = CredentialBundle.from_mapping(
            {
                "access_token": "at",
                "email": "jane@agile6.com",
                "name": "Jane",
                "mcp_access_token": "mcp_v1_x",
            }
        )

        assert bundle == CredentialBundle("at", "jane@agile6.com", "Jane", "mcp_v1_x")

    def test_from_mapping_drops_unknown_fields(self):
        """A client-supplied API key can't ride along into authentication."""
        bundle = CredentialBundle.from_mapping({"email": "jane@agile6.com", "api_key": "client-key"})

        assert not hasattr(bundle, "api_key")
        assert "client-key" not in repr(bundle)

    def test_from_mapping_ignores_non_strings(self):
        bundle = CredentialBundle.from_mapping({"email": ["jane@agile6.com"], "access_token": 42})

        assert bundle == CredentialBundle()

    def test_from_mapping_none(self):
        assert CredentialBundle.from_mapping(None) == CredentialBundle()


class TestAuditEvents:
    async def test_success_event(self, arbitrator, audit_sink):
        await arbitrator.validate_authentication(oauth("jane@agile6.com"), client_ip="10.0.0.9")

        [event] = audit_sink.of_type("authentication")
        assert event.success is True
        assert event.method == "oauth"
        assert event.user_email == "jane@agile6.com"
        assert event.client_ip == "10.0.0.9"

    async def test_failure_event_has_error_code(self, arbitrator, audit_sink):
        with pytest.raises(DomainRejected):
            await arbitrator.validate_authentication(oauth("attacker@evil.com"))

        [event] = audit_sink.of_type("authentication")
        assert event.success is False
        assert event.error_code == "domain_rejected"
        assert event.user_email == "attacker@evil.com"

    async def test_token_failure_event_never_carries_token(self, arbitrator, audit_sink):
        token = "mcp_v1_" + "C" * 43

        with pytest.raises(TokenNotFound):
            await arbitrator.validate_authentication(CredentialBundle(mcp_access_token=token))

        [event] = audit_sink.of_type("authentication")
        assert event.method == "mcp-token"
        assert event.error_code == "token_not_found"
        assert token not in repr(event)


class TestDomainHelpers:
    @pytest.mark.parametrize(
        "email, expected",
        [
            ("jane@agile6.com", True),
            ("jane@sub.agile6.com", False),
            ("jane@agile6.com.au", False),
            ("", False),
            (None, False),
        ],
    )
    def test_matches_hosted_domain(self, email, expected):
        assert matches_hosted_domain(email, "agile6.com") is expected

    def test_empty_domain_never_matches(self):
        assert not matches_hosted_domain("jane@", "")

    def test_validate_admin_access(self):
        assert validate_admin_access("jane@agile6.com", "agile6.com")
        assert not validate_admin_access("jane@evil.com", "agile6.com")


class TestGetUserIdentifier:
    @pytest.mark.parametrize(
        "user, expected",
        [
            (AuthUser(id="j@agile6.com", email="j@agile6.com", name="Jane"), "Jane"),
            (AuthUser(id="j@agile6.com", email="j@agile6.com"), "j@agile6.com"),
            (AuthUser(id=""), "OAuth User"),
        ],
    )
    def test_oauth(self, user, expected):
        assert get_user_identifier(AuthResult(True, "oauth", user)) == expected

    def test_mcp_token(self):
        result = AuthResult(True, "mcp-token", AuthUser(id="ci-agent", token_id="tok_abc"))

        assert get_user_identifier(result) == "MCP Token (tok_abc)"


class TestNoSecretLeakage:
    """Server-side secrets never reach an AuthResult, whatever the client sends."""

    SECRETS = {
        "data_api_key": "downstream-api-key-0123456789",
        "google_client_secret": "oauth-client-secret",
        "cookie_encryption_key": "cookie-key-" + "x" * 32,
    }

    async def test_oauth_result(self, arbitrator):
        props = {"access_token": "at", "email": "jane@agile6.com", "name": "Jane", **self.SECRETS}

        result = await arbitrator.validate_authentication(CredentialBundle.from_mapping(props))

        serialized = json.dumps(result.to_dict())
        for secret in self.SECRETS.values():
            assert secret not in serialized

    async def test_mcp_token_result(self, arbitrator, token_manager):
        generated = await token_manager.generate("ci-agent", "CI")
        props = {"mcp_access_token": generated.token, **self.SECRETS}

        result = await arbitrator.validate_authentication(CredentialBundle.from_mapping(props))

        serialized = json.dumps(result.to_dict())
        for secret in self.SECRETS.values():
            assert secret not in serialized
        assert generated.token not in serialized

    async def test_failure_messages(self, arbitrator):
        props = {"mcp_access_token": "mcp_v1_" + "D" * 43, **self.SECRETS}

        with pytest.raises(TokenNotFound) as exc_info:
            await arbitrator.validate_authentication(CredentialBundle.from_mapping(props))

        for secret in self.SECRETS.values():
            assert secret not in str(exc_info.value)
