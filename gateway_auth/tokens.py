"""
MCP access token lifecycle: generation, validation, revocation and admin.

MCP tokens are long-lived credentials for non-interactive agents that can't
go through the OAuth browser flow. The raw token is shown exactly once, in
the generation response. Only its SHA-256 hash is ever persisted, so a
leaked store dump can't be replayed against the server.

Records are JSON blobs in the token store (see store.py for the key layout).
Every mutation is a full read-modify-write of the blob. There is no locking
and no cross-key transaction, which means:
- generate() can leave an orphaned index or list entry if it dies midway;
  every read path treats a missing linked key as "not found".
- concurrent validations race on usageCount, which may undercount.
- concurrent admin mutations on the same token are last-write-wins.

Record state machine:
    Active --revoke--> Revoked --delete--> (gone)
    Revoked --unrevoke (admin only)--> Active
"""

import asyncio
import datetime
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from gateway_auth.audit import AuditSink, AuthEvent, truncate_token_id
from gateway_auth.codec import (
    TOKEN_PREFIX,
    constant_time_equal,
    hash_token,
    is_well_formed_token,
    random_token,
    random_token_id,
)
from gateway_auth.errors import StorageUnavailable
from gateway_auth.store import StorageKeys, TokenStore

logger = logging.getLogger("mcp-server.tokens")

GENERATION_WARNING = "Save this token now. For security reasons, it will never be shown again."


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Persisted record
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    # Stored JSON uses camelCase keys (tokenHash, lastUsedAt, ...).
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenUsageMetadata(_CamelModel):
    created_from_ip: str = "unknown"
    created_from_user_agent: str = "unknown"
    usage_count: int = 0
    last_used_from_ip: str | None = None


class TokenRecord(_CamelModel):
    """
    The persisted unit, stored at token:hash:<token_hash>.

    revoked_at is the only activity predicate: None means active.
    token_id is written at generation so validation doesn't need to scan
    the token:id:* index to find it. Records written without it are still
    resolved through the index.
    """

    token_hash: str
    user_id: str
    description: str
    created_at: datetime.datetime
    last_used_at: datetime.datetime | None = None
    revoked_at: datetime.datetime | None = None
    revocation_reason: str | None = None
    token_id: str | None = None
    metadata: TokenUsageMetadata = Field(default_factory=TokenUsageMetadata)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenGenerationResult:
    """The only value in the system's lifetime that carries the raw token."""

    token: str
    token_id: str
    user_id: str
    description: str
    created_at: datetime.datetime
    warning: str = GENERATION_WARNING


@dataclass(frozen=True)
class TokenValidationResult:
    valid: bool
    token_id: str | None = None
    user_id: str | None = None
    reason: Literal["malformed", "not_found", "revoked"] | None = None
    token_data: TokenRecord | None = None


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an admin mutation or lookup. error is set when success is False."""

    success: bool
    error: str | None = None
    data: TokenRecord | None = None


@dataclass(frozen=True)
class TokenListItem:
    token_id: str
    user_id: str
    description: str
    token_prefix: str
    created_at: datetime.datetime
    last_used_at: datetime.datetime | None
    is_revoked: bool
    revocation_reason: str | None
    usage_count: int


@dataclass(frozen=True)
class TokenStats:
    total_tokens: int
    active_tokens: int
    revoked_tokens: int
    total_usage: int
    most_recently_used: datetime.datetime | None


@dataclass(frozen=True)
class BulkRevocationResult:
    success: bool
    revoked_count: int
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Lifecycle manager
# ---------------------------------------------------------------------------


class TokenLifecycleManager:
    """
    Owns MCP token generation, validation, revocation and admin operations.

    Args:
        store: Backing key-value store, or None if storage isn't configured.
               Every operation then raises StorageUnavailable (except the
               malformed-token rejection in verify(), which never touches
               storage).
        audit: Sink for lifecycle audit events (generation, revocation, ...)
    """

    def __init__(self, store: TokenStore | None, audit: AuditSink | None = None) -> None:
        self._store = store
        self._audit = audit
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def is_configured(self) -> bool:
        return self._store is not None

    def _require_store(self) -> TokenStore:
        if self._store is None:
            raise StorageUnavailable()
        return self._store

    def _emit(self, event: AuthEvent) -> None:
        if self._audit is not None:
            self._audit.record(event)

    # ----- Generation -----

    async def generate(
        self,
        user_id: str,
        description: str,
        ip: str = "unknown",
        user_agent: str = "unknown",
    ) -> TokenGenerationResult:
        """
        Issue a new MCP access token for user_id.

        No uniqueness check is made against existing tokens: 256 bits of
        entropy make a collision negligible. A user may hold many tokens.

        Raises:
            StorageUnavailable: If no token store is configured
        """
        store = self._require_store()

        token = random_token()
        token_id = random_token_id()
        token_hash = hash_token(token)
        now = _utcnow()

        record = TokenRecord(
            token_hash=token_hash,
            user_id=user_id,
            description=description,
            created_at=now,
            token_id=token_id,
            metadata=TokenUsageMetadata(created_from_ip=ip, created_from_user_agent=user_agent),
        )

        user_tokens_key = StorageKeys.user_tokens(user_id)
        user_tokens = await self._load_id_list(user_tokens_key)
        user_tokens.append(token_id)

        await store.put_many(
            {
                StorageKeys.token_hash(token_hash): record.to_json(),
                user_tokens_key: json.dumps(user_tokens),
                StorageKeys.token_id(token_id): token_hash,
            }
        )

        self._emit(
            AuthEvent(
                event_type="token_generated",
                success=True,
                method="mcp-token",
                user_id=user_id,
                token_id=token_id,
                client_ip=ip,
            )
        )

        return TokenGenerationResult(
            token=token,
            token_id=token_id,
            user_id=user_id,
            description=description,
            created_at=now,
        )

    # ----- Validation -----

    async def verify(self, token: str, request_ip: str = "unknown") -> TokenValidationResult:
        """
        Validate a raw MCP access token.

        The structural check runs first, so malformed or hostile input is
        never hashed and never reaches the store. A token presented from a
        new IP is accepted: the IP is recorded for audit, not enforced.

        Usage metadata (lastUsedAt, usageCount, lastUsedFromIp) is updated
        in a background task. The result is returned without waiting for it
        and a failure there never fails the validation.

        Raises:
            StorageUnavailable: If no token store is configured
        """
        # Step 1: Structural check before any hashing or storage access
        if not is_well_formed_token(token):
            return TokenValidationResult(valid=False, reason="malformed")

        self._require_store()

        # Step 2: Look the record up by the token's SHA-256 hash
        token_hash = hash_token(token)
        record = await self._load_record(token_hash)
        if record is None:
            return TokenValidationResult(valid=False, reason="not_found")

        # Step 3: Revocation is final
        if record.is_revoked:
            return TokenValidationResult(valid=False, reason="revoked")

        # Step 4: Accept, recording usage in the background
        token_id = record.token_id or await self._find_token_id(token_hash)
        self._schedule_usage_update(token_hash, token_id, request_ip)

        return TokenValidationResult(
            valid=True,
            token_id=token_id,
            user_id=record.user_id,
            token_data=record,
        )

    def _schedule_usage_update(self, token_hash: str, token_id: str | None, request_ip: str) -> None:
        task = asyncio.create_task(self._record_usage(token_hash, token_id, request_ip))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _record_usage(self, token_hash: str, token_id: str | None, request_ip: str) -> None:
        # Re-read so a revocation that landed after validation isn't overwritten.
        try:
            record = await self._load_record(token_hash)
            if record is None:
                return
            record.last_used_at = _utcnow()
            record.metadata.usage_count += 1
            record.metadata.last_used_from_ip = request_ip
            await self._require_store().put(StorageKeys.token_hash(token_hash), record.to_json())
        except Exception:
            logger.warning(
                "Failed to update token usage",
                exc_info=True,
                extra={"auth_data": {"token_id": truncate_token_id(token_id)}},
            )

    async def flush_usage_updates(self) -> None:
        """Wait for every in-flight usage update."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))

    async def _find_token_id(self, token_hash: str) -> str | None:
        """Reverse index scan for records written without an embedded token id."""
        store = self._require_store()
        for key in await store.list_keys(StorageKeys.TOKEN_ID_PREFIX):
            candidate = await store.get(key)
            if candidate and constant_time_equal(candidate, token_hash):
                return key[len(StorageKeys.TOKEN_ID_PREFIX):]
        return None

    # ----- Revocation -----

    async def revoke(self, token_id: str, reason: str) -> OperationResult:
        """
        Revoke a token by id.

        Not idempotent: revoking an already-revoked token is reported as a
        failure so callers notice a stale view.
        """
        store = self._require_store()

        token_hash, record = await self._resolve(token_id)
        if token_hash is None:
            return OperationResult(success=False, error="Token not found")
        if record is None:
            return OperationResult(success=False, error="Token data not found")
        if record.is_revoked:
            return OperationResult(success=False, error="Token already revoked")

        record.revoked_at = _utcnow()
        record.revocation_reason = reason
        await store.put(StorageKeys.token_hash(token_hash), record.to_json())

        revoked = await self._load_id_list(StorageKeys.REVOKED_TOKENS)
        revoked.append(token_id)
        await store.put(StorageKeys.REVOKED_TOKENS, json.dumps(revoked))

        self._emit(
            AuthEvent(
                event_type="token_revoked",
                success=True,
                method="mcp-token",
                user_id=record.user_id,
                token_id=token_id,
            )
        )
        return OperationResult(success=True)

    # ----- Admin operations -----

    async def list_tokens_for_user(self, user_id: str) -> list[TokenListItem]:
        """List a user's tokens. Never exposes the raw token or its full hash."""
        self._require_store()

        items = []
        for token_id in await self._load_id_list(StorageKeys.user_tokens(user_id)):
            token_hash, record = await self._resolve(token_id)
            if token_hash is None or record is None:
                continue
            items.append(
                TokenListItem(
                    token_id=token_id,
                    user_id=record.user_id,
                    description=record.description,
                    token_prefix=f"{TOKEN_PREFIX}...{token_hash[-8:]}",
                    created_at=record.created_at,
                    last_used_at=record.last_used_at,
                    is_revoked=record.is_revoked,
                    revocation_reason=record.revocation_reason,
                    usage_count=record.metadata.usage_count,
                )
            )
        return items

    async def get_token_metadata(self, token_id: str) -> OperationResult:
        self._require_store()

        token_hash, record = await self._resolve(token_id)
        if token_hash is None:
            return OperationResult(success=False, error="Token not found")
        if record is None:
            return OperationResult(success=False, error="Token data not found")
        return OperationResult(success=True, data=record)

    async def update_token_description(self, token_id: str, description: str) -> OperationResult:
        store = self._require_store()

        token_hash, record = await self._resolve(token_id)
        if token_hash is None:
            return OperationResult(success=False, error="Token not found")
        if record is None:
            return OperationResult(success=False, error="Token data not found")

        record.description = description
        await store.put(StorageKeys.token_hash(token_hash), record.to_json())

        self._emit(
            AuthEvent(
                event_type="token_description_updated",
                success=True,
                user_id=record.user_id,
                token_id=token_id,
            )
        )
        return OperationResult(success=True)

    async def delete_token(self, token_id: str) -> OperationResult:
        """
        Permanently delete a token.

        Removes the record, the id index entry, the user-list entry and any
        revoked-list entry. Prefer revoke() unless the record must go.
        """
        store = self._require_store()

        token_hash, record = await self._resolve(token_id)
        if token_hash is None:
            return OperationResult(success=False, error="Token not found")
        if record is None:
            return OperationResult(success=False, error="Token data not found")

        await store.delete(StorageKeys.token_hash(token_hash))
        await store.delete(StorageKeys.token_id(token_id))
        await self._remove_from_list(StorageKeys.user_tokens(record.user_id), token_id)
        await self._remove_from_list(StorageKeys.REVOKED_TOKENS, token_id)

        self._emit(
            AuthEvent(
                event_type="token_deleted",
                success=True,
                user_id=record.user_id,
                token_id=token_id,
            )
        )
        return OperationResult(success=True)

    async def get_token_stats(self, user_id: str) -> TokenStats:
        tokens = await self.list_tokens_for_user(user_id)
        last_used = [t.last_used_at for t in tokens if t.last_used_at is not None]

        return TokenStats(
            total_tokens=len(tokens),
            active_tokens=sum(1 for t in tokens if not t.is_revoked),
            revoked_tokens=sum(1 for t in tokens if t.is_revoked),
            total_usage=sum(t.usage_count for t in tokens),
            most_recently_used=max(last_used) if last_used else None,
        )

    async def revoke_all_user_tokens(self, user_id: str, reason: str) -> BulkRevocationResult:
        """
        Revoke every token a user holds.

        Best effort: a failure on one token is collected and the loop moves
        on. Tokens that were already revoked are skipped, not reported.
        A store exception is reported by its class name only, so no storage
        details reach the caller.
        """
        self._require_store()

        revoked_count = 0
        errors = []
        for token_id in await self._load_id_list(StorageKeys.user_tokens(user_id)):
            # Offboarding must reach every token: one failing write can't
            # leave the rest of the user's tokens active.
            try:
                result = await self.revoke(token_id, reason)
            except Exception as e:
                logger.warning(
                    "Failed to revoke token during bulk revocation",
                    exc_info=True,
                    extra={"auth_data": {"token_id": truncate_token_id(token_id)}},
                )
                errors.append(f"{token_id}: {e.__class__.__name__}")
                continue
            if result.success:
                revoked_count += 1
            elif result.error != "Token already revoked":
                errors.append(f"{token_id}: {result.error}")

        return BulkRevocationResult(success=True, revoked_count=revoked_count, errors=errors)

    async def unrevoke_token(self, token_id: str) -> OperationResult:
        """Restore a revoked token. Only for tokens revoked by mistake."""
        store = self._require_store()

        token_hash, record = await self._resolve(token_id)
        if token_hash is None:
            return OperationResult(success=False, error="Token not found")
        if record is None:
            return OperationResult(success=False, error="Token data not found")
        if not record.is_revoked:
            return OperationResult(success=False, error="Token is not revoked")

        record.revoked_at = None
        record.revocation_reason = None
        await store.put(StorageKeys.token_hash(token_hash), record.to_json())
        await self._remove_from_list(StorageKeys.REVOKED_TOKENS, token_id)

        self._emit(
            AuthEvent(
                event_type="token_unrevoked",
                success=True,
                user_id=record.user_id,
                token_id=token_id,
            )
        )
        return OperationResult(success=True)

    async def list_revoked_token_ids(self) -> list[str]:
        self._require_store()
        return await self._load_id_list(StorageKeys.REVOKED_TOKENS)

    # ----- Storage helpers -----

    async def _resolve(self, token_id: str) -> tuple[str | None, TokenRecord | None]:
        """Follow token:id:<id> to its record. Either half may be missing."""
        token_hash = await self._require_store().get(StorageKeys.token_id(token_id))
        if not token_hash:
            return None, None
        return token_hash, await self._load_record(token_hash)

    async def _load_record(self, token_hash: str) -> TokenRecord | None:
        raw = await self._require_store().get(StorageKeys.token_hash(token_hash))
        if raw is None:
            return None

        try:
            record = TokenRecord.model_validate_json(raw)
        except ValidationError:
            logger.error("Discarding unreadable token record")
            return None

        if not constant_time_equal(record.token_hash, token_hash):
            logger.error(
                "Token record hash does not match its key",
                extra={"auth_data": {"token_id": truncate_token_id(record.token_id)}},
            )
            return None
        return record

    async def _load_id_list(self, key: str) -> list[str]:
        raw = await self._require_store().get(key)
        if not raw:
            return []
        # A corrupt list reads as empty, the same way _load_record treats a
        # corrupt record as missing. The next write replaces it.
        try:
            value: Any = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Discarding unreadable token id list", extra={"auth_data": {"key": key}})
            return []
        return [item for item in value if isinstance(item, str)] if isinstance(value, list) else []

    async def _remove_from_list(self, key: str, token_id: str) -> None:
        ids = await self._load_id_list(key)
        if not ids:
            return
        remaining = [item for item in ids if not constant_time_equal(item, token_id)]
        store = self._require_store()
        await store.put(key, json.dumps(remaining))
