#!/usr/bin/env python3
"""
OAuth-protected MCP Server.

This module serves a FastMCP server over streamable HTTP and acts as an
OAuth 2.1 resource server in front of it.

Key Features:
- Bearer token validation on every MCP request
- RFC 8707 audience binding to the server's canonical URI
- Protected Resource Metadata (RFC 9728)
- Pluggable token verification (introspection by default)
"""

import argparse
import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastmcp import FastMCP
from starlette.middleware import Middleware

from logging_config import setup_logging
from oauth_config import (
    ProtectedResourceMetadata,
    ResourceServerSettings,
    load_resource_server_settings,
)
from oauth_resource_server import (
    BearerAuthMiddleware,
    IntrospectionTokenVerifier,
    ResourceServerTokenValidator,
    build_protected_resource_metadata,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "Simple MCP Server"
SERVER_VERSION = "1.0.0"

mcp = FastMCP(SERVER_NAME)


# ============================================================================
# MCP Tools
# ============================================================================


@mcp.tool
def echo(message: str) -> str:
    """Echo back the input message.

    Args:
        message: The message to echo back.

    Returns:
        The echoed message with a prefix.
    """
    return f"Echo: {message}"


@mcp.tool
def get_server_info() -> dict:
    """Return the server's name and version."""
    return {"name": SERVER_NAME, "version": SERVER_VERSION}


# ============================================================================
# Application
# ============================================================================


def build_validator(settings: ResourceServerSettings) -> ResourceServerTokenValidator:
    """Create the token validator for the configured authorization server.

    Tokens are introspected at OAUTH_INTROSPECTION_ENDPOINT, or at
    {authorization_server}/oauth/introspect when unset.
    """
    endpoint = settings.introspection_endpoint or f"{settings.authorization_server}/oauth/introspect"
    verifier = IntrospectionTokenVerifier(
        introspection_endpoint=endpoint,
        resource=settings.resource,
        client_id=settings.introspection_client_id,
        client_secret=settings.introspection_client_secret,
        timeout=settings.http_timeout,
    )
    return ResourceServerTokenValidator(verifier, settings.resource)


def create_app(
    validator: ResourceServerTokenValidator,
    metadata: ProtectedResourceMetadata,
) -> FastAPI:
    """Build the HTTP app: discovery routes plus the protected MCP endpoint.

    Args:
        validator: Bearer token validator for the MCP endpoint.
        metadata: Protected resource metadata to publish.

    Returns:
        FastAPI application with the MCP app mounted at /mcp.
    """
    mcp_http_app = mcp.http_app(
        path="/",
        middleware=[Middleware(BearerAuthMiddleware, validator=validator)],
    )

    app = FastAPI(
        title=SERVER_NAME,
        description="MCP server acting as an OAuth 2.1 resource server",
        version=SERVER_VERSION,
        lifespan=mcp_http_app.lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "server": SERVER_NAME}

    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource():
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
        return metadata.model_dump()

    # Older clients look here
    @app.get("/.well-known/oauth-resource-metadata")
    async def oauth_resource_metadata():
        return metadata.model_dump()

    app.mount("/mcp", mcp_http_app)
    return app


def print_server_info(settings: ResourceServerSettings) -> None:
    """Log startup information and available endpoints."""
    separator = "=" * 60
    base_url = f"http://localhost:{settings.port}"

    logger.info(separator)
    logger.info(f"{SERVER_NAME} starting")
    logger.info(separator)
    logger.info(f"MCP endpoint:               {base_url}/mcp/")
    logger.info(f"Protected Resource Metadata: {base_url}/.well-known/oauth-protected-resource")
    logger.info(f"Canonical resource URI:      {settings.resource}")
    logger.info(f"Authorization server:        {settings.authorization_server}")
    logger.info(separator)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the MCP server.

    Returns:
        Exit code: 0 for success, 1 for error.
    """
    parser = argparse.ArgumentParser(description="OAuth-protected MCP server")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.debug)

    try:
        settings = load_resource_server_settings()
        metadata = build_protected_resource_metadata(
            settings.resource,
            [settings.authorization_server],
            settings.scopes,
        )
        app = create_app(build_validator(settings), metadata)

        print_server_info(settings)
        uvicorn.run(app, host=settings.host, port=settings.port)
        return 0

    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Server failed to start: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
