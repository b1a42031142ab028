"""
CLI utility to mint credentials for the MCP server.

Two kinds of credentials:

    session    An OAuth session token, as the OAuth callback would issue it.
               For local development only: it skips the provider entirely.
    mcp-token  A long-lived MCP access token for an agent, written to the
               configured token store (MCP_TOKEN_STORE_URL must point at a
               shared store such as Redis, memory:// dies with this process).

Usage examples:

    # OAuth session for a user of the hosted domain (default dev key)
    uv run python -m scripts.generate_token session --email jane@agile6.com --name "Jane Doe"

    # Session that already expired (for testing rejection)
    uv run python -m scripts.generate_token session --email jane@agile6.com --ttl-seconds -60

    # MCP access token for a CI agent
    MCP_TOKEN_STORE_URL=redis://localhost:6379/0 \\
      uv run python -m scripts.generate_token mcp-token --user-id ci-agent --description "Nightly CI"

The generated credentials can be used with curl:

    curl -X POST http://localhost:8080/mcp \\
      -H "Content-Type: application/json" \\
      -H "x-mcp-access-token: mcp_v1_..." \\
      -d '{"jsonrpc":"2.0","id":1,"method":"initialize",...}'
"""

import argparse
import asyncio

from gateway_auth.audit import LoggingAuditSink
from gateway_auth.config import settings
from gateway_auth.session import issue_session_token
from gateway_auth.store import RedisTokenStore, create_token_store
from gateway_auth.tokens import TokenGenerationResult, TokenLifecycleManager


async def issue_mcp_token(user_id: str, description: str, store_url: str | None) -> TokenGenerationResult:
    """
    Issue an MCP access token into the store at store_url.

    Raises:
        StorageUnavailable: If store_url is empty
    """
    store = create_token_store(store_url)
    manager = TokenLifecycleManager(store, audit=LoggingAuditSink())
    try:
        return await manager.generate(user_id, description, ip="cli", user_agent="generate_token")
    finally:
        if isinstance(store, RedisTokenStore):
            await store.close()


def _print_usage(header: str, value: str) -> None:
    print()
    print("Usage with curl (initialize MCP session):")
    print("  curl -X POST http://localhost:8080/mcp \\")
    print('    -H "Content-Type: application/json" \\')
    print('    -H "Accept: application/json, text/event-stream" \\')
    print(f'    -H "{header}: {value}" \\')
    print(
        '    -d \'{"jsonrpc":"2.0","id":1,"method":"initialize",'
        '"params":{"protocolVersion":"2025-03-26","capabilities":{},'
        '"clientInfo":{"name":"test","version":"1.0"}}}\''
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint OAuth session tokens and MCP access tokens for the MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    session_parser = subparsers.add_parser("session", help="Mint a development OAuth session token")
    session_parser.add_argument("--email", required=True, help="User email (must match the hosted domain)")
    session_parser.add_argument("--name", default=None, help="Display name")
    session_parser.add_argument(
        "--access-token",
        default="dev-oauth-access-token",
        help="Provider access token to embed (not verified by the server)",
    )
    session_parser.add_argument(
        "--secret",
        default=settings.cookie_encryption_key,
        help="Signing key (must match server's MCP_COOKIE_ENCRYPTION_KEY)",
    )
    session_parser.add_argument(
        "--ttl-seconds",
        type=int,
        default=settings.session_ttl_seconds,
        help="Seconds until the session expires (negative = already expired)",
    )

    token_parser = subparsers.add_parser("mcp-token", help="Issue an MCP access token")
    token_parser.add_argument("--user-id", required=True, help="Owner of the token (e.g. 'ci-agent')")
    token_parser.add_argument("--description", required=True, help="What the token is for")
    token_parser.add_argument(
        "--store-url",
        default=settings.token_store_url,
        help="Token store URL (default: MCP_TOKEN_STORE_URL)",
    )

    args = parser.parse_args()

    if args.command == "session":
        token = issue_session_token(
            email=args.email,
            access_token=args.access_token,
            secret=args.secret,
            name=args.name,
            algorithm=settings.session_algorithm,
            ttl_seconds=args.ttl_seconds,
        )
        print(f"Email:      {args.email}")
        print(f"Expires in: {args.ttl_seconds}s")
        print()
        print(f"Session token: {token}")
        _print_usage("Authorization", f"Bearer {token}")
        return

    if args.store_url == "memory://":
        print("Warning: memory:// store - this token only exists inside this process.")

    result = asyncio.run(issue_mcp_token(args.user_id, args.description, args.store_url))
    print(f"User:       {result.user_id}")
    print(f"Token id:   {result.token_id}")
    print(f"Created:    {result.created_at.isoformat()}")
    print()
    print(f"Token: {result.token}")
    print()
    print(result.warning)
    _print_usage("x-mcp-access-token", result.token)


if __name__ == "__main__":
    main()
