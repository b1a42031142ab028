"""
Tool access levels.

Maps each MCP tool name to the access level required to see or call it:

    "authenticated"  any caller the arbitrator accepts (OAuth or MCP token)
    "admin"          OAuth users passing validate_admin_access()

MCP-token callers can never reach admin tools: token administration must be
done by a human signed in through OAuth, so a leaked token can't mint more
tokens or un-revoke itself.

The server registers the tool functions (server.py); the auth middleware
imports this map to filter tools/list and gate tools/call. A tool missing
from the map is denied to everyone.
"""

AUTHENTICATED = "authenticated"
ADMIN = "admin"

TOOL_ACCESS_MAP: dict[str, str] = {
    "whoami": AUTHENTICATED,
    "generate_mcp_token": ADMIN,
    "list_mcp_tokens": ADMIN,
    "get_mcp_token": ADMIN,
    "update_mcp_token_description": ADMIN,
    "revoke_mcp_token": ADMIN,
    "unrevoke_mcp_token": ADMIN,
    "delete_mcp_token": ADMIN,
    "mcp_token_stats": ADMIN,
    "revoke_all_mcp_tokens": ADMIN,
}
