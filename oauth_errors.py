"""
Error taxonomy for the OAuth 2.1 authorization layer.

Every failure raised by the client, the callback receiver or the metadata
helpers derives from OAuthError so callers can catch the whole family.
"""

from typing import Optional


class OAuthError(Exception):
    """Base class for all OAuth failures."""


# ===== Discovery =====

class MetadataError(OAuthError):
    """Authorization server metadata could not be obtained."""


class MetadataFetchError(MetadataError):
    """The metadata request failed or returned a non-2xx status."""

    def __init__(self, url: str, status: Optional[int] = None, message: Optional[str] = None):
        self.url = url
        self.status = status
        detail = message or (f"HTTP {status}" if status is not None else "request failed")
        super().__init__(f"Failed to fetch authorization server metadata from {url}: {detail}")


class MetadataParseError(MetadataError):
    """The metadata document is not well-formed."""


# ===== Registration =====

class RegistrationUnsupportedError(OAuthError):
    """The authorization server does not advertise a registration endpoint."""

    def __init__(self, message: str = "Authorization server does not support dynamic client registration"):
        super().__init__(message)


class RegistrationError(OAuthError):
    """Dynamic client registration was rejected."""

    def __init__(self, status: Optional[int], body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Client registration failed: {status} {body}".rstrip())


# ===== Authorization code flow =====

class CsrfMismatchError(OAuthError):
    """The state returned by the authorization server does not match the one sent."""

    def __init__(self, message: str = "State parameter mismatch - possible CSRF attack"):
        super().__init__(message)


class TokenEndpointError(OAuthError):
    """The token endpoint returned an OAuth error."""

    action = "Token request"

    def __init__(self, error: str, description: Optional[str] = None, status: Optional[int] = None):
        self.error = error
        self.description = description
        self.status = status
        message = f"{self.action} failed: {error}"
        if description:
            message += f" - {description}"
        super().__init__(message)


class TokenExchangeError(TokenEndpointError):
    """Exchanging the authorization code for tokens failed."""

    action = "Token exchange"


class TokenRefreshError(TokenEndpointError):
    """Refreshing the access token failed. Stored tokens are left untouched."""

    action = "Token refresh"


class NotAuthenticatedError(OAuthError):
    """No usable access token is held."""

    def __init__(self, message: str = "No access token available - authorization required"):
        super().__init__(message)


class NoRefreshTokenError(NotAuthenticatedError):
    """A refresh was needed but no refresh token is held."""

    def __init__(self, message: str = "No refresh token available"):
        super().__init__(message)


# ===== Callback =====

class AuthorizationDeniedError(OAuthError):
    """The authorization server redirected back with an error."""

    def __init__(self, error: str, error_description: Optional[str] = None):
        self.error = error
        self.error_description = error_description
        message = f"Authorization denied: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message)


class MalformedCallbackError(OAuthError):
    """The callback is missing the authorization code or state."""

    def __init__(self, message: str = "Missing authorization code or state parameter"):
        super().__init__(message)


class UnknownSessionError(OAuthError):
    """No pending authorization matches the callback's state.

    Raised when the session expired, was already consumed, or lives in a
    different process than the one that received the redirect.
    """

    def __init__(self, state: str):
        self.state = state
        super().__init__("Authorization session not found or expired")


class AuthorizationTimeoutError(OAuthError):
    """The user did not complete authorization in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Authorization not completed within {timeout:g} seconds")
