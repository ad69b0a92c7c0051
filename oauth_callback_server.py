"""
OAuth callback receiver.

Correlates the browser redirect (code + state) with the pending authorization
attempt that produced it and finishes the code exchange on the owning
OAuthClient. Sessions are single-use and live in memory, so the receiver must
run in the same process as the client that started the flow.
"""

import asyncio
import html
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse

from oauth_client import OAuthClient
from oauth_config import TokenResponse
from oauth_errors import (
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    MalformedCallbackError,
    OAuthError,
    UnknownSessionError,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 600.0

# How long an outcome nobody is waiting for stays collectable
DEFAULT_COMPLETION_GRACE = 30.0


@dataclass
class AuthSession:
    """A pending authorization attempt, keyed by its state."""

    state: str
    code_verifier: str
    oauth_client: OAuthClient
    created_at: float = field(default_factory=time.time)


class SessionStore(Protocol):
    """Storage for pending sessions. Swap in a durable store for multi-process setups."""

    def put(self, session: AuthSession) -> None: ...

    def get(self, state: str) -> Optional[AuthSession]: ...

    def pop(self, state: str) -> Optional[AuthSession]: ...

    def delete(self, state: str) -> bool: ...

    def __len__(self) -> int: ...


class InMemorySessionStore:
    """
    Thread-safe in-memory session store with TTL eviction.

    pop() is the atomic take: of two callers racing for the same state,
    exactly one receives the session.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._sessions: dict[str, AuthSession] = {}
        self._lock = threading.Lock()

    def _expired(self, session: AuthSession) -> bool:
        return self.ttl_seconds is not None and self.clock() - session.created_at > self.ttl_seconds

    def _evict_expired(self) -> None:
        expired = [state for state, s in self._sessions.items() if self._expired(s)]
        for state in expired:
            del self._sessions[state]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired authorization session(s)")

    def put(self, session: AuthSession) -> None:
        with self._lock:
            self._evict_expired()
            self._sessions[session.state] = session

    def get(self, state: str) -> Optional[AuthSession]:
        with self._lock:
            self._evict_expired()
            return self._sessions.get(state)

    def pop(self, state: str) -> Optional[AuthSession]:
        with self._lock:
            self._evict_expired()
            return self._sessions.pop(state, None)

    def delete(self, state: str) -> bool:
        with self._lock:
            return self._sessions.pop(state, None) is not None

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._sessions)


# ============================================================================
# HTML pages
# ============================================================================

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
  <head><title>{title}</title></head>
  <body>
    <h1>{title}</h1>
    {body}
  </body>
</html>
"""

SUCCESS_BODY = """<p>You have successfully authorized the MCP client.</p>
    <p>You can now close this window and return to the application.</p>
    <script>setTimeout(() => window.close(), 3000);</script>"""


def render_page(title: str, *paragraphs: str, body: Optional[str] = None) -> str:
    """Render a minimal HTML page; paragraph text is escaped."""
    if body is None:
        body = "\n    ".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    return PAGE_TEMPLATE.format(title=html.escape(title), body=body)


# ============================================================================
# Callback server
# ============================================================================


class OAuthCallbackServer:
    """
    Receives the OAuth redirect and finishes the flow on the owning client.

    Construct one per interactive flow owner; there is no shared instance.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3001,
        store: Optional[SessionStore] = None,
        debug: bool = False,
        clock: Callable[[], float] = time.time,
        completion_grace: float = DEFAULT_COMPLETION_GRACE,
    ):
        self.host = host
        self.port = port
        self.clock = clock
        self.completion_grace = completion_grace
        self.store: SessionStore = store if store is not None else InMemorySessionStore(clock=clock)
        self.debug = debug

        self._completions: dict[str, asyncio.Future] = {}
        self._waiting: set[str] = set()
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None

        self.app = self._create_app()
        if debug:
            logger.debug("OAuth callback server initialized with debug mode enabled")

    # ===== Sessions =====

    def store_session(self, state: str, code_verifier: str, oauth_client: OAuthClient) -> None:
        """Register a pending attempt. A colliding state is overwritten."""
        self.store.put(AuthSession(state, code_verifier, oauth_client, created_at=self.clock()))
        logger.debug(f"Stored authorization session (active sessions: {len(self.store)})")

    def get_session(self, state: str) -> Optional[AuthSession]:
        """Look up a pending attempt; None when absent, expired or consumed."""
        return self.store.get(state)

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> TokenResponse:
        """Complete the authorization attempt identified by state.

        Raises:
            AuthorizationDeniedError: The redirect carried an OAuth error.
            MalformedCallbackError: code or state is missing.
            UnknownSessionError: No pending attempt for state.
            OAuthError: Whatever the token exchange raised.
        """
        if error:
            logger.error(f"OAuth error in callback: {error} {error_description or ''}".rstrip())
            denied = AuthorizationDeniedError(error, error_description)
            if state:
                self._resolve(state, error=denied)
            raise denied

        if not code or not state:
            logger.debug(f"Callback missing parameters: code={bool(code)} state={bool(state)}")
            raise MalformedCallbackError()

        session = self.store.pop(state)
        if session is None:
            logger.warning(
                f"No authorization session for callback state (active sessions: {len(self.store)})"
            )
            raise UnknownSessionError(state)

        # The outcome must reach a waiter that registers after this point
        self._completion(state)
        logger.debug("Starting token exchange for callback")
        try:
            token_response = await session.oauth_client.exchange_code_for_tokens(
                code, session.code_verifier, state, session.state
            )
        except OAuthError as e:
            logger.error(f"Token exchange failed: {e}")
            self._resolve(state, error=e)
            raise

        self._resolve(state, result=token_response)
        return token_response

    # ===== Waiting for completion =====

    def _completion(self, state: str) -> asyncio.Future:
        future = self._completions.get(state)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._completions[state] = future
        return future

    def _resolve(
        self,
        state: str,
        result: Optional[TokenResponse] = None,
        error: Optional[Exception] = None,
    ) -> None:
        future = self._completions.get(state)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

        if state not in self._waiting:
            asyncio.get_running_loop().call_later(
                self.completion_grace, self._discard_completion, state, future
            )

    def _discard_completion(self, state: str, future: asyncio.Future) -> None:
        if self._completions.get(state) is not future:
            return
        del self._completions[state]
        # Mark the outcome retrieved so the loop does not log it as lost
        if not future.cancelled():
            future.exception()
        logger.debug("Discarded uncollected authorization outcome")

    async def wait_for_authorization(self, state: str, timeout: Optional[float] = 300.0) -> TokenResponse:
        """Wait until the callback for state has been handled.

        Raises:
            AuthorizationTimeoutError: No callback arrived within timeout; the
                pending session is discarded.
            OAuthError: The callback failed (denied, exchange error, ...).
        """
        future = self._completion(state)
        self._waiting.add(state)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Authorization timed out after {timeout} seconds")
            raise AuthorizationTimeoutError(timeout) from None
        finally:
            # A finished or abandoned attempt can never be redeemed later
            self.store.delete(state)
            self._completions.pop(state, None)
            self._waiting.discard(state)

    # ===== HTTP =====

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="OAuth Callback Server", docs_url=None, redoc_url=None)

        @app.get("/callback")
        async def callback(request: Request) -> HTMLResponse:
            params = request.query_params
            if self.debug:
                logger.debug(
                    "Received callback: code=%s state=%s error=%s",
                    "present" if params.get("code") else "missing",
                    "present" if params.get("state") else "missing",
                    params.get("error"),
                )
            try:
                await self.handle_callback(
                    params.get("code"),
                    params.get("state"),
                    params.get("error"),
                    params.get("error_description"),
                )
            except AuthorizationDeniedError as e:
                return HTMLResponse(
                    render_page(
                        "Authorization Failed",
                        f"Error: {e.error}",
                        f"Description: {e.error_description or 'none given'}",
                    ),
                    status_code=400,
                )
            except MalformedCallbackError:
                return HTMLResponse(
                    render_page("Invalid Callback", "Missing authorization code or state parameter."),
                    status_code=400,
                )
            except UnknownSessionError:
                return HTMLResponse(
                    render_page(
                        "Invalid Session",
                        "Authorization session not found or expired.",
                        "Start the authorization again from the application.",
                    ),
                    status_code=400,
                )
            except OAuthError as e:
                return HTMLResponse(
                    render_page(
                        "Authorization Failed",
                        "Failed to exchange authorization code for tokens.",
                        f"Error: {e}",
                    ),
                    status_code=502,
                )

            return HTMLResponse(render_page("Authorization Successful!", body=SUCCESS_BODY))

        @app.get("/health")
        async def health() -> JSONResponse:
            return JSONResponse({
                "status": "ok",
                "server": "OAuth Callback Server",
                "debug": self.debug,
                "activeSessions": len(self.store),
            })

        return app

    async def start(self) -> None:
        """Serve the callback app in the running event loop."""
        if self.is_running():
            logger.debug(f"Callback server already running on port {self.port}")
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="debug" if self.debug else "warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve())

        while not self._server.started:
            if self._serve_task.done():
                # serve() exits early when the port cannot be bound
                self._serve_task.result()
                raise OSError(f"OAuth callback server failed to start on port {self.port}")
            await asyncio.sleep(0.05)
        logger.info(f"OAuth callback server running on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop serving and wait for shutdown."""
        if self._server is None:
            return
        self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
        self._server = None
        self._serve_task = None
        logger.info("OAuth callback server stopped")

    def is_running(self) -> bool:
        return bool(self._server is not None and self._server.started and not self._server.should_exit)

    def get_status(self) -> dict:
        return {
            "running": self.is_running(),
            "port": self.port,
            "sessions": len(self.store),
            "debug": self.debug,
        }
