"""
Audit events for authentication outcomes and token lifecycle changes.

The arbitrator and the token lifecycle manager receive an AuditSink at
construction instead of reaching for a module-level logger, so tests can
swap in a capturing sink and assert on exactly what was recorded.

Audit entries never carry raw tokens, token hashes, API keys or client
secrets. Token ids are truncated to their first 8 characters.
"""

import datetime
import logging
from dataclasses import asdict, dataclass, field
from typing import Protocol, runtime_checkable


def truncate_token_id(token_id: str | None) -> str | None:
    if token_id is None or len(token_id) <= 8:
        return token_id
    return f"{token_id[:8]}..."


def _utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass(frozen=True)
class AuthEvent:
    """
    A single audit record.

    Attributes:
        event_type: "authentication", "token_generated", "token_revoked",
                    "token_unrevoked", "token_deleted" or
                    "token_description_updated"
        success: Whether the operation succeeded
        method: Authentication method ("oauth", "mcp-token" or "none")
        error_code: Classified error code on failure (e.g. "token_revoked")
    """

    event_type: str
    success: bool
    method: str | None = None
    user_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    token_id: str | None = None
    client_ip: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    timestamp: str = field(default_factory=_utc_timestamp)

    def as_log_fields(self) -> dict:
        fields = {key: value for key, value in asdict(self).items() if value is not None}
        if "token_id" in fields:
            fields["token_id"] = truncate_token_id(fields["token_id"])
        return fields


@runtime_checkable
class AuditSink(Protocol):
    """Receives audit events. Delivery guarantees are up to the implementation."""

    def record(self, event: AuthEvent) -> None: ...


class LoggingAuditSink:
    """
    Writes audit events as structured log entries.

    Events go through the standard logging module with the event fields in
    the "auth_data" extra, which the server's JSON formatter merges into the
    emitted line. Failures are logged at WARNING so they can be alerted on.
    """

    def __init__(self, logger: logging.Logger | None = None, enabled: bool = True) -> None:
        self._logger = logger or logging.getLogger("mcp-server.audit")
        self._enabled = enabled

    def record(self, event: AuthEvent) -> None:
        if not self._enabled:
            return
        level = logging.INFO if event.success else logging.WARNING
        message = f"{event.event_type} {'succeeded' if event.success else 'failed'}"
        self._logger.log(level, message, extra={"auth_data": event.as_log_fields()})
