"""
Local redirect listener for the QuickBooks authorization-code flow.

Binds the first free port of a fixed range (every port of which is registered
as a redirect URI with Intuit), waits for exactly one ``/cb`` redirect, and
hands the authorization code back to the caller.

Usage::

    listener = OAuthCallbackListener(config.callback)
    port, state = listener.start()
    try:
        # ... send the user to an auth URL built with listener.callback_url and state ...
        result = await listener.await_callback(timeout=300)
    finally:
        await listener.aclose()
"""

from __future__ import annotations

import asyncio
import errno
import html
import json
import logging
import os
import secrets
import ssl
import threading
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from qbbroker.config import CallbackConfig
from qbbroker.errors import (
    AuthorizationTimeoutError,
    ListenerStateError,
    OAuthCallbackError,
    PortRangeExhaustedError,
)

logger = logging.getLogger("qbbroker.auth.listener")

CALLBACK_PATH = "/cb"
TOKENS_PATH = "/tokens"
MAX_LINGER_SECONDS = 30.0
_POLL_INTERVAL = 0.05


class ListenerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


@dataclass(frozen=True)
class CallbackResult:
    code: str
    state: str
    realm_id: str | None = None


# ---------------------------------------------------------------------------
# HTML pages
# ---------------------------------------------------------------------------

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, sans-serif;
               max-width: 600px; margin: 50px auto; padding: 20px; }}
        .box {{ padding: 15px; border-radius: 6px; color: {color}; background: {background}; }}
        pre {{ font-family: monospace; background: #f6f8fa; padding: 10px;
               border-radius: 4px; white-space: pre-wrap; word-break: break-all; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <div class="box">{body}</div>
    <p>{footer}</p>
    {script}
</body>
</html>
"""

_TOKENS_SCRIPT = """<pre id="tokens">Waiting for tokens...</pre>
    <script>
        async function poll() {
            const resp = await fetch("%s");
            const data = await resp.json();
            if (data.ready) {
                document.getElementById("tokens").textContent =
                    "QB_REFRESH_TOKEN=" + data.refresh_token + "\\nQB_REALM_ID=" + data.realm_id;
            } else {
                setTimeout(poll, 1000);
            }
        }
        poll();
    </script>""" % TOKENS_PATH


def _success_page(expose_tokens: bool) -> str:
    return _PAGE.format(
        title="Authentication Successful",
        color="#28a745",
        background="#d4edda",
        body="<p>QuickBooks has been connected successfully.</p>",
        footer="You can close this window and return to your assistant.",
        script=_TOKENS_SCRIPT if expose_tokens else "",
    )


def _error_page(title: str, message: str, detail: str = "") -> str:
    body = f"<p>{html.escape(message)}</p>"
    if detail:
        body += f"<p>{html.escape(detail)}</p>"
    return _PAGE.format(
        title=html.escape(title),
        color="#d73a49",
        background="#ffeef0",
        body=body,
        footer="Please close this window and try again.",
        script="",
    )


# ---------------------------------------------------------------------------
# HTTP plumbing
# ---------------------------------------------------------------------------


class _CallbackHTTPServer(ThreadingHTTPServer):
    # One thread per connection; an idle preconnect socket must not hold up /cb
    daemon_threads = True
    # POSIX SO_REUSEADDR only skips TIME_WAIT; a live listener still blocks the port.
    # On Windows it would allow two listeners on one port.
    allow_reuse_address = os.name != "nt"

    def __init__(self, address: tuple[str, int], listener: OAuthCallbackListener) -> None:
        super().__init__(address, _OAuthCallbackHandler)
        self.listener = listener


class _OAuthCallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for the OAuth redirect and the token hand-back endpoint."""

    # Idle connections are dropped after this many seconds
    timeout = 5

    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items() if v}
        listener = self.server.listener

        if parsed.path == CALLBACK_PATH:
            status, page = listener._handle_callback(params)
            self._send(status, "text/html; charset=utf-8", page)
        elif parsed.path == TOKENS_PATH and listener.config.expose_tokens:
            self._send(200, "application/json", json.dumps(listener._tokens_payload()))
        else:
            self._send(404, "text/plain", "Not found")

    def _send(self, status: int, content_type: str, body: str) -> None:
        data = body.encode()
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("callback listener: " + format, *args)


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------


class OAuthCallbackListener:
    """Single-use local endpoint completing one authorization round-trip.

    ``IDLE -> LISTENING -> (SUCCEEDED | FAILED | TIMED_OUT) -> CLOSED``
    """

    def __init__(self, config: CallbackConfig | None = None) -> None:
        self.config = config or CallbackConfig()
        self.status = ListenerState.IDLE
        self.transitions: list[ListenerState] = [ListenerState.IDLE]
        self.port: int | None = None
        self._state = ""
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._outcome: CallbackResult | OAuthCallbackError | None = None
        self._waiter: tuple[asyncio.AbstractEventLoop, asyncio.Future[None]] | None = None
        self._token_data: dict[str, Any] | None = None
        self._tokens_delivered = threading.Event()
        self._closing = False

    @property
    def state(self) -> str:
        """CSRF state generated for this session."""
        return self._state

    @property
    def callback_url(self) -> str:
        if self.port is None:
            raise ListenerStateError("Listener has not been started")
        if self.config.use_https:
            return f"https://{self.config.https_host}:{self.port}{CALLBACK_PATH}"
        return f"http://localhost:{self.port}{CALLBACK_PATH}"

    def _transition(self, status: ListenerState) -> None:
        self.status = status
        self.transitions.append(status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> tuple[int, str]:
        """Bind the first free whitelisted port and start serving.

        Returns:
            ``(port, state)`` for building the authorization URL.
        """
        if self.status is not ListenerState.IDLE:
            raise ListenerStateError(
                f"Listener cannot be started from state {self.status.value}; "
                "create a new listener for each authorization attempt"
            )

        server = self._bind()
        if self.config.use_https and self.config.certfile:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(self.config.certfile, self.config.keyfile)
            server.socket = context.wrap_socket(server.socket, server_side=True)

        self._server = server
        self.port = server.server_address[1]
        self._state = secrets.token_urlsafe(32)
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": _POLL_INTERVAL},
            name=f"qbbroker-callback-{self.port}",
            daemon=True,
        )
        self._thread.start()
        self._transition(ListenerState.LISTENING)
        logger.info("OAuth callback listener started on %s", self.callback_url)
        return self.port, self._state

    def _bind(self) -> _CallbackHTTPServer:
        start, end = self.config.port_start, self.config.port_end
        for port in range(start, end + 1):
            try:
                return _CallbackHTTPServer((self.config.host, port), self)
            except OSError as e:
                if e.errno in (errno.EADDRINUSE, errno.EACCES):
                    logger.debug("Port %d unavailable: %s", port, e)
                    continue
                raise
        raise PortRangeExhaustedError(
            f"No free port in the registered callback range {start}-{end}. "
            "Close other authorization attempts and try again.",
            metadata={"port_start": start, "port_end": end},
        )

    async def await_callback(self, timeout: float | None = None) -> CallbackResult:
        """Wait for the redirect without blocking the event loop.

        Raises:
            AuthorizationTimeoutError: No callback within ``timeout`` seconds;
                the listener is shut down.
            OAuthCallbackError: Denied, CSRF mismatch or malformed callback;
                the listener is shut down.
        """
        if self.status is ListenerState.IDLE or self.status is ListenerState.CLOSED:
            raise ListenerStateError(f"Listener is {self.status.value}, not listening")
        timeout = self.config.timeout if timeout is None else timeout

        loop = asyncio.get_running_loop()
        with self._lock:
            if self._waiter is not None:
                raise ListenerStateError("A callback is already being awaited")
            future: asyncio.Future[None] | None = None
            if self._outcome is None:
                future = loop.create_future()
                self._waiter = (loop, future)

        if future is not None:
            try:
                await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                with self._lock:
                    timed_out = self._outcome is None
                    if timed_out:
                        self._outcome = AuthorizationTimeoutError(
                            f"OAuth callback not received within {timeout:g}s; "
                            "authorization abandoned",
                        )
                if timed_out:
                    self._transition(ListenerState.TIMED_OUT)
            finally:
                self._waiter = None

        outcome = self._outcome
        if isinstance(outcome, OAuthCallbackError):
            await self.aclose()
            raise outcome
        if outcome is None:
            raise ListenerStateError("Callback wait ended without an outcome")
        return outcome

    def shutdown(self) -> None:
        """Release the port and cancel any pending wait. Safe to call repeatedly."""
        with self._lock:
            if self._closing:
                return
            self._closing = True
            server, self._server = self._server, None
            if self._outcome is None and self.status is not ListenerState.IDLE:
                self._outcome = OAuthCallbackError("Callback listener was shut down")
            waiter = self._waiter

        if server is not None:
            server.shutdown()
            server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
        if waiter is not None:
            self._notify(waiter)

        self._transition(ListenerState.CLOSED)
        logger.debug("OAuth callback listener on port %s closed", self.port)

    async def aclose(self) -> None:
        """Shut down from async code without blocking the event loop."""
        await asyncio.to_thread(self.shutdown)

    # ------------------------------------------------------------------
    # Token hand-back
    # ------------------------------------------------------------------

    def set_token_data(self, *, refresh_token: str, realm_id: str) -> None:
        """Make the new tokens available to the success page."""
        self._token_data = {"refresh_token": refresh_token, "realm_id": realm_id}

    async def linger(self, seconds: float | None = None) -> bool:
        """Keep serving until the success page has fetched the tokens.

        Bounded by ``MAX_LINGER_SECONDS``. Returns True if the tokens were
        delivered.
        """
        if seconds is None:
            seconds = self.config.linger_seconds
        deadline = asyncio.get_running_loop().time() + min(seconds, MAX_LINGER_SECONDS)
        while self._server is not None and asyncio.get_running_loop().time() < deadline:
            if self._tokens_delivered.is_set():
                return True
            await asyncio.sleep(0.1)
        return self._tokens_delivered.is_set()

    def _tokens_payload(self) -> dict[str, Any]:
        if self._token_data is None:
            return {"ready": False}
        self._tokens_delivered.set()
        return {"ready": True, **self._token_data}

    # ------------------------------------------------------------------
    # Request handling (server thread)
    # ------------------------------------------------------------------

    def _handle_callback(self, params: dict[str, str]) -> tuple[int, str]:
        with self._lock:
            if self._outcome is not None:
                logger.debug("Ignoring extra callback; flow already completed")
                return 200, _error_page(
                    "Already Completed",
                    "This authorization request has already been processed.",
                )

            outcome, status, page = self._validate(params)
            self._outcome = outcome
            waiter = self._waiter
            failed = isinstance(outcome, OAuthCallbackError)
            self._transition(ListenerState.FAILED if failed else ListenerState.SUCCEEDED)

        if failed:
            logger.warning("OAuth callback rejected: %s", outcome.message)
        else:
            logger.info("OAuth callback received for realm %s", outcome.realm_id)

        if waiter is not None:
            self._notify(waiter)
        return status, page

    def _validate(
        self, params: dict[str, str]
    ) -> tuple[CallbackResult | OAuthCallbackError, int, str]:
        error = params.get("error")
        if error:
            description = params.get("error_description", "")
            return (
                OAuthCallbackError(
                    f"QuickBooks authorization failed: {error}",
                    oauth_error=error,
                    metadata={"description": description},
                ),
                400,
                _error_page("Authentication Failed", f"Error: {error}", description),
            )

        if not secrets.compare_digest(params.get("state", "").encode(), self._state.encode()):
            return (
                OAuthCallbackError(
                    "Invalid state parameter (possible CSRF attack)",
                    oauth_error="state_mismatch",
                ),
                400,
                _error_page(
                    "Invalid Request",
                    "The authentication request was invalid (state mismatch).",
                ),
            )

        code = params.get("code")
        if not code:
            return (
                OAuthCallbackError(
                    "Callback did not include an authorization code",
                    oauth_error="missing_code",
                ),
                400,
                _error_page("Invalid Request", "No authorization code received."),
            )

        result = CallbackResult(code=code, state=self._state, realm_id=params.get("realmId"))
        return result, 200, _success_page(self.config.expose_tokens)

    @staticmethod
    def _notify(waiter: tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]) -> None:
        loop, future = waiter

        def _resolve() -> None:
            if not future.done():
                future.set_result(None)

        if loop.is_closed():
            return
        loop.call_soon_threadsafe(_resolve)
