"""
OAuth 2.1 client with PKCE for authenticating an MCP agent.

Flow:
1. Resolve authorization server metadata (RFC 8414)
2. Optionally register the client dynamically (RFC 7591)
3. Build the authorization URL with PKCE, state and resource indicator
4. Exchange the authorization code for tokens (state checked first)
5. Hand out valid access tokens, refreshing shortly before expiry
"""

import asyncio
import base64
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from oauth_config import (
    DEFAULT_HTTP_TIMEOUT,
    GRANT_TYPE_AUTHORIZATION_CODE,
    GRANT_TYPE_REFRESH_TOKEN,
    PKCE_CHALLENGE_METHOD,
    REFRESH_SKEW_SECONDS,
    RESPONSE_TYPE_CODE,
    TOKEN_TYPE_BEARER,
    AuthorizationServerMetadata,
    OAuthConfig,
    OAuthErrorResponse,
    TokenResponse,
)
from oauth_errors import (
    CsrfMismatchError,
    NoRefreshTokenError,
    NotAuthenticatedError,
    OAuthError,
    RegistrationError,
    RegistrationUnsupportedError,
    TokenEndpointError,
    TokenExchangeError,
    TokenRefreshError,
)
from oauth_metadata import MetadataResolver, open_http_client, register_client
from oauth_pkce import generate_pkce, generate_state

logger = logging.getLogger(__name__)


class AuthorizationState(str, enum.Enum):
    """Progress of the current authorization attempt."""

    IDLE = "idle"
    METADATA_RESOLVED = "metadata_resolved"
    REGISTERED = "registered"
    REGISTRATION_SKIPPED = "registration_skipped"
    AUTHORIZATION_STARTED = "authorization_started"
    CODE_EXCHANGE_PENDING = "code_exchange_pending"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthorizationRequest:
    """Everything the caller must keep until the redirect comes back."""

    auth_url: str
    state: str
    code_verifier: str


@dataclass(frozen=True)
class TokenSet:
    """Tokens held by one client. expires_at is a unix timestamp or None."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None
    token_type: str = TOKEN_TYPE_BEARER


class OAuthClient:
    """
    OAuth 2.1 authorization code client with PKCE and RFC 8707 resource indicators.

    Token state is private to the instance. Exchange, refresh and clear are
    serialized with a per-instance lock so a rotated refresh token is never lost.
    """

    def __init__(
        self,
        config: OAuthConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        metadata_ttl: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.http_client = http_client
        self.timeout = timeout
        self.clock = clock

        # Effective credentials; replaced when dynamic registration succeeds
        self.client_id = config.client_id
        self.client_secret = config.client_secret

        self.state = AuthorizationState.IDLE
        self.failure_reason: Optional[str] = None

        self._metadata = MetadataResolver(
            config.authorization_server,
            ttl_seconds=metadata_ttl,
            http_client=http_client,
            timeout=timeout,
            clock=clock,
        )
        self._tokens = TokenSet()
        self._lock = asyncio.Lock()

    @property
    def resource(self) -> str:
        """Canonical URI of the MCP server the tokens are bound to."""
        return self.config.resource

    @property
    def tokens(self) -> TokenSet:
        """Snapshot of the stored tokens."""
        return self._tokens

    # ===== State machine =====

    def _transition(self, new_state: AuthorizationState) -> None:
        if new_state is not self.state:
            logger.debug(f"OAuth client state: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state is not AuthorizationState.FAILED:
            self.failure_reason = None

    def _fail(self, error: Exception) -> None:
        self.state = AuthorizationState.FAILED
        self.failure_reason = str(error)

    # ===== Discovery and registration =====

    async def get_authorization_server_metadata(self) -> AuthorizationServerMetadata:
        """Resolve the authorization server metadata."""
        try:
            metadata = await self._metadata.resolve()
        except OAuthError as e:
            if self.state is not AuthorizationState.IDLE:
                self._fail(e)
            raise
        if self.state is AuthorizationState.IDLE:
            self._transition(AuthorizationState.METADATA_RESOLVED)
        return metadata

    async def register(self, client_name: str = "MCP Client") -> bool:
        """Try dynamic client registration, falling back to the configured client.

        Returns:
            True if registered credentials were adopted, False if the
            pre-configured credentials are kept.
        """
        metadata = await self.get_authorization_server_metadata()
        try:
            credentials = await register_client(
                metadata,
                self.config,
                client_name=client_name,
                http_client=self.http_client,
                timeout=self.timeout,
            )
        except (RegistrationUnsupportedError, RegistrationError) as e:
            logger.warning(f"Dynamic client registration skipped: {e}")
            self._transition(AuthorizationState.REGISTRATION_SKIPPED)
            return False

        self.client_id = credentials.client_id
        self.client_secret = credentials.client_secret
        self._transition(AuthorizationState.REGISTERED)
        return True

    # ===== Authorization =====

    async def start_authorization(self) -> AuthorizationRequest:
        """Build the authorization URL for a fresh attempt.

        The caller owns the returned state and code verifier until the
        redirect arrives.
        """
        metadata = await self.get_authorization_server_metadata()
        pkce = generate_pkce()
        state = generate_state()

        params = {
            "response_type": RESPONSE_TYPE_CODE,
            "client_id": self.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": self.config.scope,
            "state": state,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": PKCE_CHALLENGE_METHOD,
            "resource": self.resource,
        }
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        auth_url = f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

        self._transition(AuthorizationState.AUTHORIZATION_STARTED)
        logger.info(f"Authorization started for client {self.client_id}")
        return AuthorizationRequest(auth_url=auth_url, state=state, code_verifier=pkce.code_verifier)

    async def exchange_code_for_tokens(
        self,
        code: str,
        code_verifier: str,
        received_state: str,
        expected_state: str,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            CsrfMismatchError: received_state differs from expected_state.
                Checked before any network call.
            TokenExchangeError: The token endpoint rejected the request.
        """
        if received_state != expected_state:
            error = CsrfMismatchError()
            logger.warning(
                f"CSRF check failed for client {self.client_id}: "
                f"received state {received_state[:8]!r}... does not match the pending attempt"
            )
            self._fail(error)
            raise error

        async with self._lock:
            self._transition(AuthorizationState.CODE_EXCHANGE_PENDING)
            form = {
                "grant_type": GRANT_TYPE_AUTHORIZATION_CODE,
                "client_id": self.client_id,
                "code": code,
                "redirect_uri": self.config.redirect_uri,
                "code_verifier": code_verifier,
                "resource": self.resource,
            }
            try:
                metadata = await self.get_authorization_server_metadata()
                token_response = await self._token_request(metadata, form, TokenExchangeError)
            except OAuthError as e:
                self._fail(e)
                raise

            self._store(token_response, keep_refresh_token=False)
            self._transition(AuthorizationState.AUTHENTICATED)

        logger.info("OAuth authorization completed successfully")
        return token_response

    # ===== Token lifecycle =====

    async def refresh_access_token(self) -> TokenResponse:
        """Refresh the access token using the stored refresh token.

        Raises:
            NoRefreshTokenError: No refresh token is held.
            TokenRefreshError: The refresh was rejected; stored tokens are kept.
        """
        async with self._lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> TokenResponse:
        refresh_token = self._tokens.refresh_token
        if not refresh_token:
            raise NoRefreshTokenError()

        form = {
            "grant_type": GRANT_TYPE_REFRESH_TOKEN,
            "client_id": self.client_id,
            "refresh_token": refresh_token,
            "resource": self.resource,
        }
        try:
            metadata = await self._metadata.resolve()
        except OAuthError as e:
            raise TokenRefreshError("metadata_unavailable", str(e)) from e
        token_response = await self._token_request(metadata, form, TokenRefreshError)

        self._store(token_response, keep_refresh_token=True)
        logger.info("Access token refreshed")
        return token_response

    def _needs_refresh(self) -> bool:
        expires_at = self._tokens.expires_at
        return expires_at is not None and self.clock() > expires_at - REFRESH_SKEW_SECONDS

    async def get_valid_access_token(self) -> str:
        """Return an access token, refreshing it first when close to expiry.

        Raises:
            NotAuthenticatedError: No access token has been obtained.
            NoRefreshTokenError: The token is expiring and cannot be refreshed.
            TokenRefreshError: The refresh was rejected.
        """
        if not self._tokens.access_token:
            raise NotAuthenticatedError()

        if self._needs_refresh():
            async with self._lock:
                # Another caller may have refreshed while we waited
                if self._needs_refresh():
                    await self._refresh_locked()

        access_token = self._tokens.access_token
        if not access_token:
            raise NotAuthenticatedError()
        return access_token

    def has_valid_token(self) -> bool:
        """True if an access token is held and has not expired."""
        if not self._tokens.access_token:
            return False
        expires_at = self._tokens.expires_at
        return expires_at is None or self.clock() < expires_at

    async def clear_tokens(self) -> None:
        """Forget all tokens (logout).

        Waits for any exchange or refresh in flight so its result cannot
        reappear after the logout.
        """
        async with self._lock:
            self._tokens = TokenSet()
            if self.state is AuthorizationState.AUTHENTICATED:
                self._transition(AuthorizationState.IDLE)
        logger.info("OAuth tokens cleared")

    async def authorization_header(self) -> str:
        """Authorization header value carrying a valid access token."""
        return f"{TOKEN_TYPE_BEARER} {await self.get_valid_access_token()}"

    # ===== Helpers =====

    def _client_auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self.client_secret:
            credentials = f"{self.client_id}:{self.client_secret}".encode("utf-8")
            headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode('ascii')}"
        return headers

    async def _token_request(
        self,
        metadata: AuthorizationServerMetadata,
        form: dict[str, str],
        error_cls: type[TokenEndpointError],
    ) -> TokenResponse:
        async with open_http_client(self.http_client, self.timeout) as client:
            try:
                response = await client.post(
                    metadata.token_endpoint,
                    data=form,
                    headers=self._client_auth_headers(),
                    timeout=self.timeout,
                )
            except httpx.HTTPError as e:
                raise error_cls("request_failed", str(e) or type(e).__name__) from e

        if not response.is_success:
            raise self._parse_error(response, error_cls)

        try:
            return TokenResponse(**response.json())
        except (ValueError, TypeError, ValidationError) as e:
            raise error_cls(
                "invalid_response", f"Malformed token response: {e}", response.status_code
            ) from e

    @staticmethod
    def _parse_error(response: httpx.Response, error_cls: type[TokenEndpointError]) -> TokenEndpointError:
        try:
            body = OAuthErrorResponse(**response.json())
            return error_cls(body.error, body.error_description, response.status_code)
        except (ValueError, TypeError, ValidationError):
            return error_cls(
                f"http_{response.status_code}",
                response.text[:200] or None,
                response.status_code,
            )

    def _store(self, token_response: TokenResponse, keep_refresh_token: bool) -> None:
        refresh_token = token_response.refresh_token
        if refresh_token is None and keep_refresh_token:
            refresh_token = self._tokens.refresh_token

        expires_at = None
        if token_response.expires_in is not None:
            expires_at = self.clock() + token_response.expires_in

        self._tokens = TokenSet(
            access_token=token_response.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=token_response.scope,
            token_type=token_response.token_type,
        )
