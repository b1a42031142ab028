"""
OAuth session tokens: carrying the provider's claims to the MCP endpoint.

After the OAuth provider's callback (outside this server) has authenticated
a user, it issues a session token: a JWT signed with the server's cookie
encryption key that wraps the provider's claims:

    {
        "email": "jane@agile6.com",        # From the provider, verbatim
        "name": "Jane Doe",
        "access_token": "ya29....",         # Provider access token
        "exp": 1738800000
    }

The client sends it as "Authorization: Bearer <session token>". Decoding it
proves the claims came from our callback (signature) and are still fresh
(expiry). Domain policy is NOT enforced here, that's the arbitrator's job.

A missing, malformed, forged or expired session simply yields no OAuth
claims; the request may still authenticate with an MCP access token.
"""

import datetime
from dataclasses import dataclass

import jwt


class SessionError(Exception):
    """Raised when a session token fails validation. Message is for server logs only."""


@dataclass(frozen=True)
class SessionClaims:
    email: str
    access_token: str
    name: str | None = None


def issue_session_token(
    email: str,
    access_token: str,
    secret: str,
    name: str | None = None,
    algorithm: str = "HS256",
    ttl_seconds: int = 3600,
) -> str:
    """Sign a session token for an OAuth-authenticated user."""
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "email": email,
        "access_token": access_token,
        "iat": now,
        "exp": now + datetime.timedelta(seconds=ttl_seconds),
    }
    if name is not None:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm=algorithm)


def extract_bearer_token(authorization_header: str | None) -> str | None:
    """Return the token from "Bearer <token>" (scheme case-insensitive), else None."""
    if not authorization_header:
        return None
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


def decode_session_token(token: str, secret: str, algorithm: str = "HS256") -> SessionClaims:
    """
    Verify a session token's signature and expiry and return its claims.

    Raises:
        SessionError: If the token is expired, forged, malformed or lacks
                      the email/access_token claims
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": ["exp", "email", "access_token"]},
        )
    except jwt.ExpiredSignatureError:
        raise SessionError("Session token has expired")
    except jwt.InvalidTokenError as e:
        raise SessionError(f"Invalid session token: {e}")

    email = payload.get("email")
    access_token = payload.get("access_token")
    name = payload.get("name")

    if not isinstance(email, str) or not isinstance(access_token, str):
        raise SessionError("Invalid session claims: email and access_token must be strings")

    return SessionClaims(
        email=email,
        access_token=access_token,
        name=name if isinstance(name, str) else None,
    )
