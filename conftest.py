"""
Shared fixtures: an in-process fake authorization server behind httpx.MockTransport.
"""

import asyncio
import json
from typing import Optional
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

from oauth_client import OAuthClient
from oauth_config import OAuthConfig


AUTH_SERVER = "https://auth.example.com"
RESOURCE = "http://localhost:3000"


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAuthorizationServer:
    """
    Minimal OAuth authorization server speaking just enough HTTP for the client.

    Token responses are served from a queue; when the queue is empty a fresh
    token pair is minted for every request.
    """

    def __init__(self, registration: bool = True, expires_in: Optional[int] = 3600):
        self.registration = registration
        self.expires_in = expires_in
        self.requests: list[httpx.Request] = []
        self.token_responses: list[httpx.Response] = []
        self.registration_response: Optional[httpx.Response] = None
        self.metadata_status = 200
        # When set, token requests block until the gate opens
        self.token_gate: Optional[asyncio.Event] = None
        self.token_request_arrived = asyncio.Event()
        self._issued = 0

    @property
    def metadata(self) -> dict:
        document = {
            "issuer": AUTH_SERVER,
            "authorization_endpoint": f"{AUTH_SERVER}/authorize",
            "token_endpoint": f"{AUTH_SERVER}/token",
            "response_types_supported": ["code"],
            "code_challenge_methods_supported": ["S256"],
        }
        if self.registration:
            document["registration_endpoint"] = f"{AUTH_SERVER}/register"
        return document

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    def metadata_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/.well-known/oauth-authorization-server"]

    def queue_token(self, status_code: int = 200, **body) -> None:
        self.token_responses.append(httpx.Response(status_code, json=body))

    def _mint(self) -> httpx.Response:
        self._issued += 1
        body = {
            "access_token": f"access-{self._issued}",
            "refresh_token": f"refresh-{self._issued}",
            "token_type": "Bearer",
        }
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        return httpx.Response(200, json=body)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/oauth-authorization-server":
            if self.metadata_status != 200:
                return httpx.Response(self.metadata_status, text="unavailable")
            return httpx.Response(200, json=self.metadata)

        if path == "/register":
            if self.registration_response is not None:
                return self.registration_response
            body = json.loads(request.content)
            return httpx.Response(201, json={
                "client_id": "registered-client",
                "client_secret": "registered-secret",
                "redirect_uris": body["redirect_uris"],
            })

        if path == "/token":
            self.token_request_arrived.set()
            if self.token_gate is not None:
                await self.token_gate.wait()
            if self.token_responses:
                return self.token_responses.pop(0)
            return self._mint()

        return httpx.Response(404)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decode an x-www-form-urlencoded request body into single values."""
    return {k: v[0] for k, v in parse_qs(request.content.decode("ascii")).items()}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_server() -> FakeAuthorizationServer:
    return FakeAuthorizationServer()


@pytest.fixture
def oauth_config() -> OAuthConfig:
    return OAuthConfig(
        authorization_server=AUTH_SERVER,
        client_id="agentic_ai",
        redirect_uri="http://localhost:3001/callback",
        scope="read write",
        resource=RESOURCE,
    )


@pytest_asyncio.fixture
async def http_client(auth_server):
    async with auth_server.http_client() as client:
        yield client


@pytest.fixture
def oauth_client(oauth_config, http_client, clock) -> OAuthClient:
    return OAuthClient(oauth_config, http_client=http_client, clock=clock)
