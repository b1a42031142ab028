"""
Token encoding primitives: random generation, Base58, hashing and comparison.

Everything in this module is a pure function with no I/O. The lifecycle
manager builds on these to mint and look up MCP access tokens.

Token formats:
    Access token:  mcp_v1_<base58(32 random bytes)>   (secret, shown once)
    Token id:      tok_<base58(16 random bytes)>      (non-secret handle)

Base58 uses the Bitcoin alphabet, which leaves out the visually ambiguous
glyphs 0, O, I and l so tokens can be copied by hand without confusion.
"""

import hashlib
import hmac
import re
import secrets

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

TOKEN_PREFIX = "mcp_v1_"
TOKEN_ID_PREFIX = "tok_"

# 32 bytes = 256 bits of entropy for secrets, 16 bytes for ids.
TOKEN_BYTES = 32
TOKEN_ID_BYTES = 16

# 32 bytes encode to at most 44 Base58 characters; an all-zero input
# encodes to 32 '1's, the shortest possible body.
_TOKEN_PATTERN = re.compile(rf"{TOKEN_PREFIX}[{BASE58_ALPHABET}]{{32,44}}")


def encode_base58(data: bytes) -> str:
    """
    Encode bytes with the Base58 (Bitcoin) alphabet.

    Each leading zero byte becomes a leading '1', the standard zero-run
    handling that keeps the encoding reversible for inputs like b"\\x00\\x01".
    """
    num = int.from_bytes(data, "big")

    encoded = []
    while num > 0:
        num, remainder = divmod(num, 58)
        encoded.append(BASE58_ALPHABET[remainder])

    zero_run = len(data) - len(data.lstrip(b"\x00"))
    return "1" * zero_run + "".join(reversed(encoded))


def random_token() -> str:
    """Generate a new raw MCP access token (mcp_v1_ + 32 random bytes)."""
    return TOKEN_PREFIX + encode_base58(secrets.token_bytes(TOKEN_BYTES))


def random_token_id() -> str:
    """Generate a new token id (tok_ + 16 random bytes)."""
    return TOKEN_ID_PREFIX + encode_base58(secrets.token_bytes(TOKEN_ID_BYTES))


def is_well_formed_token(token: object) -> bool:
    """Structural check run before a token is ever hashed or looked up."""
    return isinstance(token, str) and _TOKEN_PATTERN.fullmatch(token) is not None


def hash_token(token: str) -> str:
    """Return the lower-case hex SHA-256 digest of a token (64 characters)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_equal(a: str, b: str) -> bool:
    """
    Compare two strings without leaking where they differ.

    The length check is a fast rejection that reveals nothing about the
    secret's content. hmac.compare_digest then examines every byte.
    """
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
