"""
Key-value storage for MCP token records.

The token subsystem only needs a flat, eventually-consistent key-value
namespace. Everything is stored as strings (JSON blobs or plain hashes)
without TTLs, so any store offering get/put/delete and prefix listing works.

Key layout:
    token:hash:<sha256hex>   -> JSON TokenRecord
    token:id:<tokenId>       -> <sha256hex>
    user:tokens:<userId>     -> JSON array of token ids
    revoked:tokens           -> JSON array of token ids

Two backends are provided:
- MemoryTokenStore: a dict in the current process (local development, tests)
- RedisTokenStore: redis.asyncio, shared between server replicas

Writes are never transactional across operations. put_many() lets a
backend batch several writes (Redis runs them in MULTI/EXEC) to narrow the
window in which a crash leaves a partially written token behind.
"""

from typing import Protocol, runtime_checkable

import redis.asyncio as redis


class StorageKeys:
    """Key templates for the token namespace."""

    TOKEN_HASH_PREFIX = "token:hash:"
    TOKEN_ID_PREFIX = "token:id:"
    USER_TOKENS_PREFIX = "user:tokens:"
    REVOKED_TOKENS = "revoked:tokens"

    @staticmethod
    def token_hash(token_hash: str) -> str:
        return f"{StorageKeys.TOKEN_HASH_PREFIX}{token_hash}"

    @staticmethod
    def token_id(token_id: str) -> str:
        return f"{StorageKeys.TOKEN_ID_PREFIX}{token_id}"

    @staticmethod
    def user_tokens(user_id: str) -> str:
        return f"{StorageKeys.USER_TOKENS_PREFIX}{user_id}"


@runtime_checkable
class TokenStore(Protocol):
    """Minimal async key-value interface consumed by the token lifecycle."""

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def put_many(self, items: dict[str, str]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...


class MemoryTokenStore:
    """
    In-process token store backed by a dict.

    Not persistent and not shared between processes: restarting the server
    loses every issued token. Useful for local development and tests.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def put_many(self, items: dict[str, str]) -> None:
        self._data.update(items)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))

    def dump(self) -> dict[str, str]:
        """Return a copy of every stored key/value pair."""
        return dict(self._data)


def _escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so a prefix matches literally."""
    for char in ("\\", "*", "?", "[", "]"):
        value = value.replace(char, "\\" + char)
    return value


class RedisTokenStore:
    """
    Token store on top of redis.asyncio.

    The client is created with decode_responses=True so every value comes
    back as str, matching the MemoryTokenStore contract.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTokenStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def put(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def put_many(self, items: dict[str, str]) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            for key, value in items.items():
                pipe.set(key, value)
            await pipe.execute()

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def list_keys(self, prefix: str) -> list[str]:
        keys = [key async for key in self._client.scan_iter(match=f"{_escape_glob(prefix)}*")]
        return sorted(keys)

    async def close(self) -> None:
        await self._client.aclose()


def create_token_store(url: str | None) -> TokenStore | None:
    """
    Build a token store from a URL.

    Returns None when no URL is configured: the OAuth-only path keeps
    working, while token operations fail with StorageUnavailable.

    Raises:
        ValueError: If the URL scheme is not supported
    """
    if not url:
        return None
    if url == "memory://":
        return MemoryTokenStore()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisTokenStore.from_url(url)
    raise ValueError(f"Unsupported token store URL scheme: {url.split(':', 1)[0]}")
