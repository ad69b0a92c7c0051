"""
OAuth 2.1 resource server support for the MCP endpoint.

Bearer tokens on inbound MCP requests are checked for syntax, handed to a
pluggable verifier, and bound to this server's canonical URI (RFC 8707).
Rejections are always 401/403 with a JSON body, never a 500.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oauth_config import DEFAULT_HTTP_TIMEOUT, ProtectedResourceMetadata
from oauth_metadata import open_http_client

logger = logging.getLogger(__name__)

# RFC 6750 b64token syntax
TOKEN_PATTERN = re.compile(r"[A-Za-z0-9\-._~+/]+=*")
MIN_TOKEN_LENGTH = 10
MAX_TOKEN_LENGTH = 8192


@dataclass(frozen=True)
class TokenValidation:
    """Result of checking one bearer token."""

    valid: bool
    audience: Optional[str] = None
    scope: Optional[str] = None
    subject: Optional[str] = None
    client_id: Optional[str] = None
    expires_at: Optional[float] = None

    @classmethod
    def invalid(cls) -> "TokenValidation":
        return cls(valid=False)


class TokenVerifier(Protocol):
    """Checks token authenticity against the issuing authorization server."""

    async def verify(self, token: str) -> TokenValidation: ...


# ============================================================================
# Verifiers
# ============================================================================


class IntrospectionTokenVerifier:
    """
    Verifies tokens with the authorization server's introspection endpoint (RFC 7662).
    """

    def __init__(
        self,
        introspection_endpoint: str,
        resource: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.introspection_endpoint = introspection_endpoint
        self.resource = resource
        self.client_id = client_id
        self.client_secret = client_secret
        self.http_client = http_client
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.client_id and self.client_secret:
            credentials = f"{self.client_id}:{self.client_secret}".encode("utf-8")
            headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode('ascii')}"
        return headers

    def _audience(self, claim) -> Optional[str]:
        # aud may be a string or a list of strings
        if isinstance(claim, str):
            return claim
        if isinstance(claim, list):
            if self.resource in claim:
                return self.resource
            return next((a for a in claim if isinstance(a, str)), None)
        return None

    async def verify(self, token: str) -> TokenValidation:
        async with open_http_client(self.http_client, self.timeout) as client:
            response = await client.post(
                self.introspection_endpoint,
                data={"token": token, "token_type_hint": "access_token"},
                headers=self._headers(),
                timeout=self.timeout,
            )
        if not response.is_success:
            logger.warning(f"Token introspection returned {response.status_code}")
            return TokenValidation.invalid()

        body = response.json()
        if not isinstance(body, dict) or not body.get("active"):
            return TokenValidation.invalid()

        exp = body.get("exp")
        return TokenValidation(
            valid=True,
            audience=self._audience(body.get("aud")),
            scope=body.get("scope"),
            subject=body.get("sub"),
            client_id=body.get("client_id"),
            expires_at=float(exp) if isinstance(exp, (int, float)) else None,
        )


@dataclass
class IssuedToken:
    audience: str
    scope: Optional[str] = None
    subject: Optional[str] = None
    expires_at: Optional[float] = None


class InMemoryTokenVerifier:
    """
    Verifies tokens against an in-process registry of issued tokens.

    Useful when the authorization server runs in the same process, and for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.tokens: dict[str, IssuedToken] = {}

    def register(
        self,
        token: str,
        audience: str,
        scope: Optional[str] = None,
        subject: Optional[str] = None,
        expires_in: Optional[float] = None,
    ) -> None:
        expires_at = self.clock() + expires_in if expires_in is not None else None
        self.tokens[token] = IssuedToken(audience, scope, subject, expires_at)

    def revoke(self, token: str) -> None:
        self.tokens.pop(token, None)

    async def verify(self, token: str) -> TokenValidation:
        issued = self.tokens.get(token)
        if issued is None:
            return TokenValidation.invalid()
        return TokenValidation(
            valid=True,
            audience=issued.audience,
            scope=issued.scope,
            subject=issued.subject,
            expires_at=issued.expires_at,
        )


# ============================================================================
# Validation and request authorization
# ============================================================================


@dataclass(frozen=True)
class AuthorizationVerdict:
    """What the transport should do with one inbound request."""

    status_code: int
    error: Optional[str] = None
    error_description: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    validation: Optional[TokenValidation] = None

    @property
    def allowed(self) -> bool:
        return self.status_code == 200

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            {"error": self.error, "error_description": self.error_description},
            status_code=self.status_code,
            headers=self.headers,
        )


def build_protected_resource_metadata(
    resource: str,
    authorization_servers: Sequence[str],
    scopes: Sequence[str] = (),
) -> ProtectedResourceMetadata:
    """Protected resource metadata (RFC 9728) for this MCP server."""
    return ProtectedResourceMetadata(
        resource=resource,
        authorization_servers=list(authorization_servers),
        scopes=list(scopes),
    )


def extract_bearer_token(authorization_header: Optional[str]) -> Optional[str]:
    """Return the token from 'Bearer <token>', or None."""
    if not authorization_header or not authorization_header.startswith("Bearer "):
        return None
    token = authorization_header[len("Bearer "):].strip()
    return token or None


class ResourceServerTokenValidator:
    """
    Validates bearer tokens for one resource (the MCP server's canonical URI).
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        resource: str,
        clock: Callable[[], float] = time.time,
    ):
        self.verifier = verifier
        self.resource = resource
        self.clock = clock

    @property
    def www_authenticate(self) -> str:
        return f'Bearer realm="{self.resource}", resource="{self.resource}"'

    @staticmethod
    def is_well_formed(token: Optional[str]) -> bool:
        return bool(
            token
            and MIN_TOKEN_LENGTH <= len(token) <= MAX_TOKEN_LENGTH
            and TOKEN_PATTERN.fullmatch(token)
        )

    async def validate_token(self, token: Optional[str]) -> TokenValidation:
        """Check one token. Never raises; failures are reported as invalid."""
        if not self.is_well_formed(token):
            return TokenValidation.invalid()

        try:
            validation = await self.verifier.verify(token)
        except Exception as e:
            logger.warning(f"Token verification failed: {type(e).__name__}: {e}")
            return TokenValidation.invalid()

        if validation.valid and validation.expires_at is not None and self.clock() >= validation.expires_at:
            logger.debug("Rejected expired token")
            return TokenValidation.invalid()
        return validation

    async def authorize(self, authorization_header: Optional[str]) -> AuthorizationVerdict:
        """Decide whether a request carrying authorization_header may proceed."""
        token = extract_bearer_token(authorization_header)
        if token is None:
            logger.info("Request rejected: no Bearer token")
            return AuthorizationVerdict(
                status_code=401,
                error="unauthorized",
                error_description="Bearer token required",
                headers={"WWW-Authenticate": self.www_authenticate},
            )

        validation = await self.validate_token(token)
        if not validation.valid:
            logger.info("Request rejected: invalid or expired token")
            return AuthorizationVerdict(
                status_code=401,
                error="invalid_token",
                error_description="Invalid or expired access token",
                headers={"WWW-Authenticate": self.www_authenticate},
                validation=validation,
            )

        if validation.audience != self.resource:
            logger.warning(f"Request rejected: token audience {validation.audience!r} is not {self.resource!r}")
            return AuthorizationVerdict(
                status_code=403,
                error="insufficient_scope",
                error_description="Token not intended for this resource",
                validation=validation,
            )

        return AuthorizationVerdict(status_code=200, validation=validation)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing bearer token validation on the wrapped MCP app."""

    def __init__(self, app, validator: ResourceServerTokenValidator):
        super().__init__(app)
        self.validator = validator

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)

        verdict = await self.validator.authorize(request.headers.get("Authorization"))
        if not verdict.allowed:
            return verdict.to_response()

        request.state.token = verdict.validation
        return await call_next(request)
