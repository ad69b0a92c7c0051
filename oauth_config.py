"""
OAuth 2.1 configuration for MCP authorization.

Holds the client configuration, the discovery/token document models and the
protocol constants shared by the client, the callback receiver and the
resource server. Values come from the environment; nothing here performs I/O.
"""

import os
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# OAuth 2.1 constants
GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
GRANT_TYPE_REFRESH_TOKEN = "refresh_token"
RESPONSE_TYPE_CODE = "code"
TOKEN_TYPE_BEARER = "Bearer"
PKCE_CHALLENGE_METHOD = "S256"

# Tokens are refreshed this many seconds before they expire
REFRESH_SKEW_SECONDS = 30

# Upper bound for every outbound HTTP call
DEFAULT_HTTP_TIMEOUT = 15.0

# Canonical URI of the MCP server (the RFC 8707 resource indicator)
MCP_SERVER_URI = "http://localhost:3000"

DEFAULT_AUTHORIZATION_SERVER = "https://maverics7.stratademo.io"
DEFAULT_CLIENT_ID = "agentic_ai"
DEFAULT_REDIRECT_URI = "http://localhost:3001/callback"
DEFAULT_SCOPE = "mcp:read mcp:write"


class OAuthConfig(BaseModel):
    """
    Client-side OAuth configuration.

    Immutable once a client has been built from it.
    """
    model_config = ConfigDict(frozen=True)

    authorization_server: str = Field(..., description="Authorization server base URL")
    client_id: str
    client_secret: Optional[str] = None
    redirect_uri: str
    scope: str = Field(default=DEFAULT_SCOPE, description="Space-delimited scope string")
    resource: str = Field(default=MCP_SERVER_URI, description="Canonical resource URI")


class AuthorizationServerMetadata(BaseModel):
    """
    OAuth 2.0 Authorization Server Metadata (RFC 8414).
    """
    model_config = ConfigDict(extra="allow")

    issuer: Optional[str] = None
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    response_types_supported: List[str] = Field(default_factory=list)
    grant_types_supported: List[str] = Field(default_factory=list)
    token_endpoint_auth_methods_supported: List[str] = Field(default_factory=list)
    scopes_supported: Optional[List[str]] = None
    code_challenge_methods_supported: Optional[List[str]] = None


class ProtectedResourceMetadata(BaseModel):
    """
    OAuth 2.0 Protected Resource Metadata (RFC 9728) served by the MCP server.
    """
    model_config = ConfigDict(frozen=True)

    resource: str
    authorization_servers: List[str]
    scopes: List[str] = Field(default_factory=list)
    token_endpoint_auth_methods_supported: List[str] = Field(
        default_factory=lambda: ["client_secret_basic", "client_secret_post"]
    )
    bearer_methods_supported: List[str] = Field(default_factory=lambda: ["header"])


class TokenResponse(BaseModel):
    """
    Successful token endpoint response.
    """
    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = TOKEN_TYPE_BEARER
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class OAuthErrorResponse(BaseModel):
    """
    OAuth error object returned by the token and registration endpoints.
    """
    model_config = ConfigDict(extra="allow")

    error: str
    error_description: Optional[str] = None
    error_uri: Optional[str] = None
    state: Optional[str] = None


class ResourceServerSettings(BaseModel):
    """
    Settings for the MCP resource server process.
    """
    model_config = ConfigDict(frozen=True)

    resource: str = MCP_SERVER_URI
    authorization_server: str = DEFAULT_AUTHORIZATION_SERVER
    introspection_endpoint: Optional[str] = None
    introspection_client_id: Optional[str] = None
    introspection_client_secret: Optional[str] = None
    scopes: List[str] = Field(default_factory=lambda: DEFAULT_SCOPE.split())
    host: str = "0.0.0.0"
    port: int = 3000
    http_timeout: float = DEFAULT_HTTP_TIMEOUT


def get_http_timeout() -> float:
    """Outbound HTTP timeout in seconds (OAUTH_HTTP_TIMEOUT)."""
    return float(os.getenv("OAUTH_HTTP_TIMEOUT", str(DEFAULT_HTTP_TIMEOUT)))


def load_oauth_config() -> OAuthConfig:
    """Build the client configuration from environment variables.

    Returns:
        OAuthConfig with the defaults filled in for anything unset.
    """
    return OAuthConfig(
        authorization_server=os.getenv(
            "OAUTH_AUTHORIZATION_SERVER", DEFAULT_AUTHORIZATION_SERVER
        ).rstrip("/"),
        client_id=os.getenv("OAUTH_CLIENT_ID", DEFAULT_CLIENT_ID),
        client_secret=os.getenv("OAUTH_CLIENT_SECRET") or None,
        redirect_uri=os.getenv("OAUTH_REDIRECT_URI", DEFAULT_REDIRECT_URI),
        scope=os.getenv("OAUTH_SCOPE", DEFAULT_SCOPE),
        resource=os.getenv("MCP_SERVER_URI", MCP_SERVER_URI),
    )


def load_resource_server_settings() -> ResourceServerSettings:
    """Build the resource server settings from environment variables."""
    authorization_server = os.getenv(
        "OAUTH_AUTHORIZATION_SERVER", DEFAULT_AUTHORIZATION_SERVER
    ).rstrip("/")
    return ResourceServerSettings(
        resource=os.getenv("MCP_SERVER_URI", MCP_SERVER_URI),
        authorization_server=authorization_server,
        introspection_endpoint=os.getenv("OAUTH_INTROSPECTION_ENDPOINT") or None,
        introspection_client_id=os.getenv("OAUTH_CLIENT_ID") or None,
        introspection_client_secret=os.getenv("OAUTH_CLIENT_SECRET") or None,
        scopes=os.getenv("OAUTH_SCOPE", DEFAULT_SCOPE).split(),
        host=os.getenv("MCP_HOST", "0.0.0.0"),
        port=int(os.getenv("MCP_PORT", "3000")),
        http_timeout=get_http_timeout(),
    )
