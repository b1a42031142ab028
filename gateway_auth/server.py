"""
MCP server with OAuth / MCP-token authentication and token administration.

This module creates and runs the MCP server with:
- An auth middleware that runs the AuthenticationArbitrator on every
  tools/list and tools/call request
- A whoami tool for any authenticated caller
- MCP token administration tools, restricted to OAuth users of the
  hosted domain (see tools.py for the access map)
- Health and readiness HTTP endpoints (for Kubernetes liveness and readiness checks)
- Structured JSON logging, with audit events on the mcp-server.audit logger
- Streamable HTTP transport

Architecture:
    The auth flow for every MCP request:

    1. Client sends an HTTP request with either
         "Authorization: Bearer <session token>"  (OAuth users), or
         "x-mcp-access-token: mcp_v1_..."         (agents)
    2. FastMCP's RequestContextMiddleware stores the HTTP request in a ContextVar
    3. AuthMiddleware builds a CredentialBundle from exactly those two headers
       (any other header, such as a client-supplied API key, is ignored)
    4. The arbitrator picks OAuth over MCP token, enforces the domain
       allow-list or verifies the token, and returns an AuthResult
    5. tools/list is filtered and tools/call is gated by TOOL_ACCESS_MAP
    6. The AuthResult is exposed to the tool body through current_auth

Running the server:
    uv run python -m gateway_auth.server

    This starts the server on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Health check at /health
    - Readiness check at /ready
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Mapping, Sequence

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest
from pydantic_core import to_jsonable_python
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gateway_auth.audit import LoggingAuditSink
from gateway_auth.auth import (
    AuthenticationArbitrator,
    AuthResult,
    CredentialBundle,
    get_user_identifier,
    validate_admin_access,
)
from gateway_auth.config import initialize_settings, settings
from gateway_auth.errors import AuthError
from gateway_auth.session import SessionError, decode_session_token, extract_bearer_token
from gateway_auth.store import create_token_store
from gateway_auth.tokens import TokenLifecycleManager
from gateway_auth.tools import ADMIN, AUTHENTICATED, TOOL_ACCESS_MAP

MCP_TOKEN_HEADER = "x-mcp-access-token"

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06T10:30:00", "level": "INFO", "logger": "mcp-server.audit",
         "message": "authentication succeeded", "event_type": "authentication", "method": "oauth"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"auth_data": {...}})
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JSONLogFormatter())

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[handler],
)
logger = logging.getLogger("mcp-server")


# ---------------------------------------------------------------------------
# Authentication wiring
# ---------------------------------------------------------------------------
# Built once at import time from settings. The arbitrator and the token
# manager share one audit sink and one store.

audit_sink = LoggingAuditSink(enabled=settings.enable_auth_logging)
token_store = create_token_store(settings.token_store_url)
token_manager = TokenLifecycleManager(token_store, audit=audit_sink)
arbitrator = AuthenticationArbitrator(settings.hosted_domain, token_manager, audit=audit_sink)

# The AuthResult of the request currently being served, set by AuthMiddleware
# around tools/call so tool bodies can see who is calling.
current_auth: ContextVar[AuthResult | None] = ContextVar("current_auth", default=None)


def credentials_from_headers(headers: Mapping[str, str]) -> CredentialBundle:
    """
    Build the credential bundle from request headers.

    Only the Authorization header (OAuth session) and the x-mcp-access-token
    header are read. An invalid session contributes no OAuth claims.
    """
    oauth_claims: dict[str, Any] = {}
    session_token = extract_bearer_token(headers.get("authorization"))
    if session_token:
        try:
            claims = decode_session_token(
                session_token,
                settings.cookie_encryption_key,
                algorithm=settings.session_algorithm,
            )
            oauth_claims = {
                "access_token": claims.access_token,
                "email": claims.email,
                "name": claims.name,
            }
        except SessionError as e:
            logger.info("Ignoring OAuth session: %s", e)

    return CredentialBundle.from_mapping(
        {**oauth_claims, "mcp_access_token": headers.get(MCP_TOKEN_HEADER)}
    )


def client_ip_from_request(request: Request) -> str:
    """
    Client IP from X-Forwarded-For (first hop), X-Real-IP, else the socket peer.

    The forwarding headers are client-controlled unless a reverse proxy in
    front of the server overwrites them. Deploy behind such a proxy, or treat
    the result as a hint: it is only recorded for audit and never used to
    grant or deny access.
    """
    # First hop is whatever the original client claimed; the proxy appends
    # its own view of the peer after it.
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client is not None:
        return request.client.host
    return "unknown"


# ---------------------------------------------------------------------------
# Authentication & Authorization Middleware
# ---------------------------------------------------------------------------


class AuthMiddleware(Middleware):
    """
    Authentication and tool access middleware.

    - tools/list responses only include the tools the caller may use
    - tools/call requests are rejected if the caller lacks the access level

    Every request is authenticated independently, even within one session.
    """

    def _get_request(self) -> Request | None:
        try:
            return get_http_request()
        except RuntimeError:
            return None

    async def _authenticate(self, request_id: str) -> AuthResult:
        """
        Run the arbitrator for the current HTTP request.

        Raises:
            AuthError: If authentication fails for any reason
        """
        # Step 1: Collect credentials and client IP from the HTTP request
        request = self._get_request()
        if request is None:
            credentials, client_ip = CredentialBundle(), "unknown"
        else:
            credentials, client_ip = credentials_from_headers(request.headers), client_ip_from_request(request)

        # Step 2: Arbitrate; the arbitrator audits, this logs the decision
        try:
            result = await arbitrator.validate_authentication(credentials, client_ip=client_ip)
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "reason": e.code,
                    }
                },
            )
            raise

        logger.info(
            "Authentication successful",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "subject": get_user_identifier(result),
                    "method": result.method,
                    "decision": "authenticated",
                }
            },
        )
        return result

    def _allowed(self, auth: AuthResult, tool_name: str) -> bool:
        access = TOOL_ACCESS_MAP.get(tool_name)
        if access == AUTHENTICATED:
            return True
        if access == ADMIN:
            return auth.method == "oauth" and validate_admin_access(auth.user.email, settings.hosted_domain)
        return False

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        """Authenticate, then hide every tool the caller may not use."""
        # Step 1: Authenticate
        request_id = str(uuid.uuid4())[:8]
        auth = await self._authenticate(request_id)

        # Step 2: Get full tool list from the server
        all_tools = await call_next(context)

        # Step 3: Filter tools by access level
        authorized_tools = [tool for tool in all_tools if self._allowed(auth, tool.name)]

        logger.info(
            "Tool list filtered by access level",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "subject": get_user_identifier(auth),
                    "total_tools": len(all_tools),
                    "authorized_tools": [t.name for t in authorized_tools],
                    "decision": "filtered",
                }
            },
        )
        return authorized_tools

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        """
        Authenticate and check the tool's access level before running it.

        A PermissionError is raised for unauthorized calls, which FastMCP
        converts to an MCP error result.
        """
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name

        # Step 1: Authenticate
        auth = await self._authenticate(request_id)

        # Step 2: Check the tool's access level
        if not self._allowed(auth, tool_name):
            logger.warning(
                "Tool call denied",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "subject": get_user_identifier(auth),
                        "tool": tool_name,
                        "required_access": TOOL_ACCESS_MAP.get(tool_name, "unmapped"),
                        "decision": "denied",
                    }
                },
            )
            raise PermissionError(f"Access denied: tool '{tool_name}' requires admin access")

        # Step 3: Authorized - run the tool with the caller in context
        logger.info(
            "Tool call authorized",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "subject": get_user_identifier(auth),
                    "tool": tool_name,
                    "decision": "allowed",
                }
            },
        )

        reset_token = current_auth.set(auth)
        try:
            return await call_next(context)
        finally:
            current_auth.reset(reset_token)


mcp = FastMCP(
    name="mcp-gateway-auth",
    instructions=(
        "Authenticated MCP gateway. Callers sign in with OAuth (organization "
        "accounts only) or present an MCP access token. OAuth administrators "
        "can issue, inspect and revoke MCP access tokens."
    ),
    middleware=[AuthMiddleware()],
)


def _payload(value: Any) -> Any:
    """JSON-ready form of results, models and dataclasses (camelCase for records)."""
    return to_jsonable_python(value, by_alias=True)


def _caller() -> AuthResult:
    auth = current_auth.get()
    if auth is None:
        raise PermissionError("Access denied: request is not authenticated")
    return auth


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(description="Show how the current request was authenticated.")
async def whoami() -> dict:
    auth = _caller()
    return {"identifier": get_user_identifier(auth), **auth.to_dict()}


@mcp.tool(description="Issue a new MCP access token. The token is shown only once.")
async def generate_mcp_token(user_id: str, description: str) -> dict:
    """
    Generate a token for user_id.

    The response is the only place the raw token ever appears. Provenance
    (IP, user agent) is taken from the admin's request.
    """
    admin = _caller()
    request = get_http_request()
    result = await token_manager.generate(
        user_id,
        description,
        ip=client_ip_from_request(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
    logger.info(
        "MCP token issued",
        extra={"auth_data": {"issued_by": admin.user.email, "user_id": user_id}},
    )
    return _payload(result)


@mcp.tool(description="List MCP access tokens for a user (never shows token values).")
async def list_mcp_tokens(user_id: str) -> dict:
    return {"tokens": _payload(await token_manager.list_tokens_for_user(user_id))}


@mcp.tool(description="Get detailed metadata for an MCP access token by token id.")
async def get_mcp_token(token_id: str) -> dict:
    return _payload(await token_manager.get_token_metadata(token_id))


@mcp.tool(description="Change the description of an MCP access token.")
async def update_mcp_token_description(token_id: str, description: str) -> dict:
    return _payload(await token_manager.update_token_description(token_id, description))


@mcp.tool(description="Revoke an MCP access token.")
async def revoke_mcp_token(token_id: str, reason: str) -> dict:
    return _payload(await token_manager.revoke(token_id, reason))


@mcp.tool(description="Restore an MCP access token that was revoked by mistake.")
async def unrevoke_mcp_token(token_id: str) -> dict:
    return _payload(await token_manager.unrevoke_token(token_id))


@mcp.tool(description="Permanently delete an MCP access token.")
async def delete_mcp_token(token_id: str) -> dict:
    return _payload(await token_manager.delete_token(token_id))


@mcp.tool(description="Usage statistics for a user's MCP access tokens.")
async def mcp_token_stats(user_id: str) -> dict:
    return _payload(await token_manager.get_token_stats(user_id))


@mcp.tool(description="Revoke every MCP access token a user holds.")
async def revoke_all_mcp_tokens(user_id: str, reason: str) -> dict:
    return _payload(await token_manager.revoke_all_user_tokens(user_id, reason))


# ---------------------------------------------------------------------------
# Health and Readiness Endpoints
# ---------------------------------------------------------------------------
# Plain HTTP endpoints (not MCP protocol) for Kubernetes health checks. They don't
# require authentication and expose nothing sensitive.


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> Response:
    """Liveness: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


@mcp.custom_route("/ready", methods=["GET"])
async def readiness_check(request: Request) -> Response:
    """Readiness: can MCP tokens be validated?"""
    if not token_manager.is_configured:
        return JSONResponse(
            {"status": "not_ready", "reason": "token store not configured"},
            status_code=503,
        )
    return JSONResponse({"status": "ready"})


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    initialize_settings(settings)
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, hosted_domain=%s)",
        settings.host,
        settings.port,
        settings.hosted_domain,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
