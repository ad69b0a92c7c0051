"""
Authorization server discovery (RFC 8414) and Dynamic Client Registration (RFC 7591).
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from oauth_config import (
    DEFAULT_HTTP_TIMEOUT,
    GRANT_TYPE_AUTHORIZATION_CODE,
    RESPONSE_TYPE_CODE,
    AuthorizationServerMetadata,
    OAuthConfig,
)
from oauth_errors import (
    MetadataFetchError,
    MetadataParseError,
    RegistrationError,
    RegistrationUnsupportedError,
)

logger = logging.getLogger(__name__)

WELL_KNOWN_AUTHORIZATION_SERVER = "/.well-known/oauth-authorization-server"


@asynccontextmanager
async def open_http_client(
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the caller's client, or a short-lived one with a bounded timeout."""
    if http_client is not None:
        yield http_client
        return
    async with httpx.AsyncClient(timeout=timeout) as client:
        yield client


# ============================================================================
# Metadata
# ============================================================================


async def fetch_metadata(
    authorization_server: str,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> AuthorizationServerMetadata:
    """Fetch the authorization server's metadata document.

    Args:
        authorization_server: Base URL of the authorization server.
        http_client: Optional client to issue the request with.
        timeout: Request timeout in seconds.

    Returns:
        Parsed AuthorizationServerMetadata.

    Raises:
        MetadataFetchError: Transport failure or non-2xx status.
        MetadataParseError: Body is not JSON or lacks required endpoints.
    """
    url = f"{authorization_server.rstrip('/')}{WELL_KNOWN_AUTHORIZATION_SERVER}"
    logger.debug(f"Fetching authorization server metadata: {url}")

    async with open_http_client(http_client, timeout) as client:
        try:
            response = await client.get(url, timeout=timeout)
        except httpx.HTTPError as e:
            raise MetadataFetchError(url, message=str(e) or type(e).__name__) from e

    if not response.is_success:
        raise MetadataFetchError(url, status=response.status_code)

    try:
        document = response.json()
    except ValueError as e:
        raise MetadataParseError(f"Metadata at {url} is not valid JSON") from e

    if not isinstance(document, dict):
        raise MetadataParseError(f"Metadata at {url} is not a JSON object")

    missing = [
        key for key in ("authorization_endpoint", "token_endpoint")
        if not document.get(key)
    ]
    if missing:
        raise MetadataParseError(
            f"Metadata at {url} is missing required fields: {', '.join(missing)}"
        )

    try:
        return AuthorizationServerMetadata(**document)
    except ValidationError as e:
        raise MetadataParseError(f"Malformed metadata at {url}: {e}") from e


class MetadataResolver:
    """
    Fetches metadata for one authorization server and keeps it for a short TTL.

    A ttl of 0 disables caching so every call goes to the network.
    """

    def __init__(
        self,
        authorization_server: str,
        *,
        ttl_seconds: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.authorization_server = authorization_server.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.http_client = http_client
        self.timeout = timeout
        self.clock = clock

        self._cached: Optional[AuthorizationServerMetadata] = None
        self._fetched_at: float = 0.0

    async def resolve(self) -> AuthorizationServerMetadata:
        """Return cached metadata while fresh, otherwise refetch."""
        if self._cached is not None and self.clock() - self._fetched_at < self.ttl_seconds:
            return self._cached

        metadata = await fetch_metadata(
            self.authorization_server,
            http_client=self.http_client,
            timeout=self.timeout,
        )
        self._cached = metadata
        self._fetched_at = self.clock()
        return metadata

    def invalidate(self) -> None:
        """Drop the cached document."""
        self._cached = None
        self._fetched_at = 0.0


# ============================================================================
# Dynamic Client Registration
# ============================================================================


class ClientRegistrationRequest(BaseModel):
    """
    OAuth 2.0 Dynamic Client Registration request (RFC 7591).
    """
    redirect_uris: List[str] = Field(..., description="Array of redirection URI strings")
    token_endpoint_auth_method: Optional[str] = Field(
        default="client_secret_basic",
        description="Authentication method for token endpoint"
    )
    grant_types: Optional[List[str]] = Field(
        default=[GRANT_TYPE_AUTHORIZATION_CODE],
        description="Array of OAuth 2.0 grant types"
    )
    response_types: Optional[List[str]] = Field(
        default=[RESPONSE_TYPE_CODE],
        description="Array of OAuth 2.0 response types"
    )
    client_name: Optional[str] = Field(default=None, description="Human-readable client name")
    client_uri: Optional[str] = Field(default=None, description="URL of client's home page")
    scope: Optional[str] = Field(default=None, description="Space-separated scope values")


class ClientRegistrationResponse(BaseModel):
    """
    OAuth 2.0 Dynamic Client Registration response (RFC 7591).

    Only client_id is mandatory; servers vary in what they echo back.
    """
    model_config = ConfigDict(extra="allow")

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = None
    redirect_uris: Optional[List[str]] = None
    token_endpoint_auth_method: Optional[str] = None
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class ClientCredentials:
    """Client identifiers returned by a successful registration."""

    client_id: str
    client_secret: Optional[str] = None


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def build_registration_request(
    config: OAuthConfig,
    client_name: str = "MCP Client",
    client_uri: Optional[str] = None,
) -> ClientRegistrationRequest:
    """Registration body for this client's exact redirect URI and scope."""
    return ClientRegistrationRequest(
        client_name=client_name,
        client_uri=client_uri or _origin(config.redirect_uri),
        redirect_uris=[config.redirect_uri],
        grant_types=[GRANT_TYPE_AUTHORIZATION_CODE],
        response_types=[RESPONSE_TYPE_CODE],
        token_endpoint_auth_method="client_secret_basic",
        scope=config.scope,
    )


async def register_client(
    metadata: AuthorizationServerMetadata,
    config: OAuthConfig,
    *,
    client_name: str = "MCP Client",
    client_uri: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> ClientCredentials:
    """Register this client with the authorization server.

    The caller decides whether to adopt the returned identifiers.

    Raises:
        RegistrationUnsupportedError: No registration_endpoint in metadata.
        RegistrationError: The endpoint rejected the request or was unreachable.
    """
    if not metadata.registration_endpoint:
        raise RegistrationUnsupportedError()

    registration = build_registration_request(config, client_name, client_uri)

    async with open_http_client(http_client, timeout) as client:
        try:
            response = await client.post(
                metadata.registration_endpoint,
                json=registration.model_dump(exclude_none=True),
                headers={"Content-Type": "application/json"},
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            raise RegistrationError(None, str(e) or type(e).__name__) from e

    if not response.is_success:
        raise RegistrationError(response.status_code, response.text)

    try:
        registered = ClientRegistrationResponse(**response.json())
    except (ValueError, TypeError, ValidationError) as e:
        raise RegistrationError(response.status_code, f"invalid registration response: {e}") from e

    logger.info(f"Registered OAuth client: {registered.client_id}")
    return ClientCredentials(
        client_id=registered.client_id,
        client_secret=registered.client_secret,
    )
