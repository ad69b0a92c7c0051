#!/usr/bin/env python3
"""
MCP agent with OAuth 2.1 authorization.

Runs the interactive authorization code flow (browser + local callback
server), then talks to the MCP server with the resulting bearer token,
refreshing it when it expires or is rejected.
"""

import argparse
import asyncio
import logging
import sys
import webbrowser
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
import mcp.types
from fastmcp import Client

from logging_config import setup_logging
from oauth_callback_server import OAuthCallbackServer
from oauth_client import OAuthClient
from oauth_config import MCP_SERVER_URI, TokenResponse, get_http_timeout, load_oauth_config

logger = logging.getLogger(__name__)

DEFAULT_AUTH_TIMEOUT = 300.0


async def run_interactive_authorization(
    oauth_client: OAuthClient,
    callback_server: OAuthCallbackServer,
    *,
    timeout: Optional[float] = DEFAULT_AUTH_TIMEOUT,
    open_browser: Callable[[str], Any] = webbrowser.open,
) -> TokenResponse:
    """Send the user to the authorization server and wait for the redirect.

    Args:
        oauth_client: Client that will own the tokens.
        callback_server: Receiver the redirect URI points at.
        timeout: Seconds to wait for the user; None waits forever.
        open_browser: Called with the authorization URL.

    Returns:
        The token response from the code exchange.

    Raises:
        AuthorizationTimeoutError: The user did not finish in time.
        OAuthError: Authorization was denied or the exchange failed.
    """
    request = await oauth_client.start_authorization()
    callback_server.store_session(request.state, request.code_verifier, oauth_client)

    logger.info("Opening browser for authorization...")
    logger.info(f"If the browser doesn't open, visit:\n  {request.auth_url}")
    open_browser(request.auth_url)

    return await callback_server.wait_for_authorization(request.state, timeout)


def is_unauthorized(error: BaseException) -> bool:
    """True if error (or anything it wraps) is an HTTP 401."""
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, httpx.HTTPStatusError) and current.response.status_code == 401:
            return True
        pending.extend(getattr(current, "exceptions", ()))
        pending.append(current.__cause__)
        pending.append(current.__context__)
    return False


class MCPAgent:
    """MCP client that authenticates with OAuth before calling tools."""

    def __init__(
        self,
        server_url: str,
        oauth_client: OAuthClient,
        callback_server: OAuthCallbackServer,
        auth_timeout: Optional[float] = DEFAULT_AUTH_TIMEOUT,
        open_browser: Callable[[str], Any] = webbrowser.open,
        register: bool = True,
    ):
        self.server_url = server_url.rstrip("/")
        self.oauth_client = oauth_client
        self.callback_server = callback_server
        self.auth_timeout = auth_timeout
        self.open_browser = open_browser
        self.register = register

    @property
    def mcp_url(self) -> str:
        return f"{self.server_url}/mcp/"

    async def initialize(self) -> None:
        """Make sure the agent holds a token, running the browser flow if needed."""
        if self.oauth_client.has_valid_token():
            logger.debug("Reusing existing access token")
            return

        if self.register:
            await self.oauth_client.register()

        started_here = not self.callback_server.is_running()
        if started_here:
            await self.callback_server.start()
        try:
            await run_interactive_authorization(
                self.oauth_client,
                self.callback_server,
                timeout=self.auth_timeout,
                open_browser=self.open_browser,
            )
        finally:
            if started_here:
                await self.callback_server.stop()

    async def _with_client(self, operation: Callable[[Client], Awaitable[Any]]) -> Any:
        # One retry after a refresh when the server rejects the token
        for attempt in range(2):
            token = await self.oauth_client.get_valid_access_token()
            try:
                async with Client(self.mcp_url, auth=token) as client:
                    return await operation(client)
            except Exception as e:
                if attempt == 0 and is_unauthorized(e):
                    logger.info("Access token rejected, refreshing...")
                    await self.oauth_client.refresh_access_token()
                    continue
                raise

    async def list_tools(self) -> list[mcp.types.Tool]:
        return await self._with_client(lambda client: client.list_tools())

    async def call_tool(self, name: str, arguments: Optional[dict] = None) -> Any:
        return await self._with_client(lambda client: client.call_tool(name, arguments or {}))


def build_agent(
    server_url: str,
    auth_timeout: Optional[float],
    register: bool = True,
    debug: bool = False,
) -> MCPAgent:
    """Wire up an agent from environment configuration."""
    config = load_oauth_config()
    redirect = urlparse(config.redirect_uri)
    oauth_client = OAuthClient(config, timeout=get_http_timeout())
    callback_server = OAuthCallbackServer(
        host=redirect.hostname or "127.0.0.1",
        port=redirect.port or 3001,
        debug=debug,
    )
    return MCPAgent(
        server_url,
        oauth_client,
        callback_server,
        auth_timeout=auth_timeout,
        register=register,
    )


async def run(agent: MCPAgent) -> None:
    await agent.initialize()

    tools = await agent.list_tools()
    for tool in tools:
        logger.info(f"  {tool.name}: {tool.description}")

    result = await agent.call_tool("echo", {"message": "Hello from the MCP agent"})
    logger.info(f"echo -> {result}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the MCP agent.

    Returns:
        Exit code: 0 for success, 1 for error.
    """
    parser = argparse.ArgumentParser(description="MCP agent with OAuth 2.1 authorization")
    parser.add_argument("--server-url", default=MCP_SERVER_URI, help="MCP server base URL")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_AUTH_TIMEOUT,
        help="Seconds to wait for browser authorization",
    )
    parser.add_argument("--no-register", action="store_true", help="Skip dynamic client registration")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.debug)

    agent = build_agent(args.server_url, args.timeout, register=not args.no_register, debug=args.debug)
    try:
        asyncio.run(run(agent))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Agent failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
