"""
Tests for authorization server discovery and dynamic client registration.
"""

import json

import httpx
import pytest

from conftest import AUTH_SERVER
from oauth_config import AuthorizationServerMetadata
from oauth_errors import (
    MetadataFetchError,
    MetadataParseError,
    RegistrationError,
    RegistrationUnsupportedError,
)
from oauth_metadata import MetadataResolver, build_registration_request, fetch_metadata, register_client


def client_returning(response: httpx.Response) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response))


class TestFetchMetadata:
    @pytest.mark.asyncio
    async def test_fetches_well_known_document(self, auth_server, http_client):
        """Metadata is read from /.well-known/oauth-authorization-server."""
        metadata = await fetch_metadata(AUTH_SERVER + "/", http_client=http_client)

        assert metadata.authorization_endpoint == f"{AUTH_SERVER}/authorize"
        assert metadata.token_endpoint == f"{AUTH_SERVER}/token"
        assert metadata.registration_endpoint == f"{AUTH_SERVER}/register"
        assert str(auth_server.requests[0].url) == f"{AUTH_SERVER}/.well-known/oauth-authorization-server"

    @pytest.mark.asyncio
    async def test_non_2xx_is_fetch_error(self):
        """A 503 surfaces as MetadataFetchError carrying the status."""
        async with client_returning(httpx.Response(503)) as client:
            with pytest.raises(MetadataFetchError) as exc_info:
                await fetch_metadata(AUTH_SERVER, http_client=client)
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_transport_error_is_fetch_error(self):
        """Connection failures are wrapped, not leaked as httpx errors."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(MetadataFetchError) as exc_info:
                await fetch_metadata(AUTH_SERVER, http_client=client)
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_non_json_is_parse_error(self):
        """An HTML error page is not metadata."""
        async with client_returning(httpx.Response(200, text="<html>oops</html>")) as client:
            with pytest.raises(MetadataParseError):
                await fetch_metadata(AUTH_SERVER, http_client=client)

    @pytest.mark.asyncio
    async def test_missing_token_endpoint_is_parse_error(self):
        """Both authorization_endpoint and token_endpoint are required."""
        document = {"authorization_endpoint": f"{AUTH_SERVER}/authorize"}
        async with client_returning(httpx.Response(200, json=document)) as client:
            with pytest.raises(MetadataParseError, match="token_endpoint"):
                await fetch_metadata(AUTH_SERVER, http_client=client)


class TestMetadataResolver:
    @pytest.mark.asyncio
    async def test_caches_within_ttl(self, auth_server, http_client, clock):
        """A second resolve inside the TTL does not hit the network."""
        resolver = MetadataResolver(AUTH_SERVER, ttl_seconds=60, http_client=http_client, clock=clock)

        await resolver.resolve()
        clock.advance(59)
        await resolver.resolve()
        assert len(auth_server.metadata_requests()) == 1

        clock.advance(2)
        await resolver.resolve()
        assert len(auth_server.metadata_requests()) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, auth_server, http_client, clock):
        """invalidate() drops the cached document."""
        resolver = MetadataResolver(AUTH_SERVER, http_client=http_client, clock=clock)
        await resolver.resolve()
        resolver.invalidate()
        await resolver.resolve()
        assert len(auth_server.metadata_requests()) == 2


class TestRegisterClient:
    @pytest.mark.asyncio
    async def test_unsupported_without_endpoint(self, oauth_config):
        """No registration_endpoint means registration is unsupported."""
        metadata = AuthorizationServerMetadata(
            authorization_endpoint=f"{AUTH_SERVER}/authorize",
            token_endpoint=f"{AUTH_SERVER}/token",
        )
        with pytest.raises(RegistrationUnsupportedError):
            await register_client(metadata, oauth_config)

    @pytest.mark.asyncio
    async def test_registration_body(self, auth_server, http_client, oauth_config):
        """The request registers exactly the configured redirect URI and scope."""
        metadata = AuthorizationServerMetadata(**auth_server.metadata)

        credentials = await register_client(
            metadata, oauth_config, client_name="Test Agent", http_client=http_client
        )

        assert credentials.client_id == "registered-client"
        assert credentials.client_secret == "registered-secret"

        body = json.loads(auth_server.requests[-1].content)
        assert body == {
            "client_name": "Test Agent",
            "client_uri": "http://localhost:3001",
            "redirect_uris": ["http://localhost:3001/callback"],
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "client_secret_basic",
            "scope": "read write",
        }

    @pytest.mark.asyncio
    async def test_rejected_registration(self, auth_server, http_client, oauth_config):
        """A non-2xx answer raises RegistrationError with status and body."""
        auth_server.registration_response = httpx.Response(400, text='{"error":"invalid_redirect_uri"}')
        metadata = AuthorizationServerMetadata(**auth_server.metadata)

        with pytest.raises(RegistrationError) as exc_info:
            await register_client(metadata, oauth_config, http_client=http_client)
        assert exc_info.value.status == 400
        assert "invalid_redirect_uri" in exc_info.value.body

    def test_explicit_client_uri(self, oauth_config):
        """client_uri defaults to the redirect origin but can be overridden."""
        request = build_registration_request(oauth_config, client_uri="https://agent.example.com")
        assert request.client_uri == "https://agent.example.com"
