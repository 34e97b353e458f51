"""
OAuth Callback Server for keyward.

Serves the loopback redirect target of the interactive flow: a minimal FastAPI
app run by uvicorn in a background thread on 127.0.0.1 and an ephemeral port.
It accepts one callback, answers with a static page and is shut down by the
flow engine.
"""

import asyncio
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from ..utils.constants import CALLBACK_PATH, LOOPBACK_HOST

logger = logging.getLogger(__name__)


_PAGE_TEMPLATE = """
    <!DOCTYPE html>
    <html>
    <head>
        <title>{title}</title>
        <style>
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
                display: flex;
                justify-content: center;
                align-items: center;
                min-height: 100vh;
                margin: 0;
                background: {background};
            }}
            .container {{
                background: white;
                padding: 40px;
                border-radius: 12px;
                box-shadow: 0 10px 40px rgba(0,0,0,0.2);
                text-align: center;
                max-width: 400px;
            }}
            h1 {{
                color: #333;
                margin-bottom: 10px;
            }}
            p {{
                color: #666;
                line-height: 1.6;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>{title}</h1>
            <p>{message}</p>
        </div>
    </body>
    </html>
    """

SUCCESS_HTML = _PAGE_TEMPLATE.format(
    title="Authorization Received",
    background="linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
    message="You can close this window and return to your terminal.",
)

ERROR_HTML = _PAGE_TEMPLATE.format(
    title="Authorization Failed",
    background="linear-gradient(135deg, #ff6b6b 0%, #ee5a5a 100%)",
    message="The authorization server reported an error. Check your terminal for details.",
)

ALREADY_HANDLED_HTML = _PAGE_TEMPLATE.format(
    title="Already Handled",
    background="linear-gradient(135deg, #bdc3c7 0%, #2c3e50 100%)",
    message="This login request has already been completed.",
)


@dataclass(frozen=True)
class CallbackResult:
    """Query parameters delivered to the loopback endpoint."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class LoopbackCallbackServer:
    """
    One-shot HTTP listener for the OAuth redirect.

    Use as a context manager; the listener is released on exit whatever the
    outcome.
    """

    def __init__(self, host: str = LOOPBACK_HOST, path: str = CALLBACK_PATH) -> None:
        self.host = host
        self.path = path
        self.app = FastAPI()
        self.server: Optional[uvicorn.Server] = None
        self.server_thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self._result: Optional[CallbackResult] = None
        self._result_lock = threading.Lock()
        self._received = threading.Event()

        self._setup_callback_route()

    def _setup_callback_route(self) -> None:
        """Setup the OAuth callback route."""

        @self.app.get(self.path)
        async def oauth_callback(request: Request) -> HTMLResponse:
            """Record the first callback and answer with a static page."""
            params = request.query_params
            result = CallbackResult(
                code=params.get("code"),
                state=params.get("state"),
                error=params.get("error"),
                error_description=params.get("error_description"),
            )
            if not result.code and not result.error:
                logger.warning("Ignoring OAuth callback without code or error")
                return HTMLResponse(content=ERROR_HTML, status_code=400)

            with self._result_lock:
                if self._received.is_set():
                    logger.warning("Ignoring repeated OAuth callback")
                    return HTMLResponse(content=ALREADY_HANDLED_HTML, status_code=409)
                self._result = result
                self._received.set()

            if result.error:
                logger.error(f"OAuth callback carried an error: {result.error}")
                return HTMLResponse(content=ERROR_HTML, status_code=400)

            logger.info("OAuth callback: received authorization code")
            return HTMLResponse(content=SUCCESS_HTML)

    @property
    def port(self) -> int:
        if self._socket is None:
            raise RuntimeError("Callback server is not started")
        return self._socket.getsockname()[1]

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def is_running(self) -> bool:
        return self.server_thread is not None and self.server_thread.is_alive()

    def start(self) -> str:
        """
        Bind an ephemeral port and start serving.

        The socket is listening before this returns, so an early browser
        redirect is queued rather than refused.

        Returns:
            The redirect URI pointing at the listener.
        """
        if self._socket is not None:
            return self.redirect_uri

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, 0))
        sock.listen(8)
        self._socket = sock

        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self.server = uvicorn.Server(config)

        def run_server() -> None:
            """Run the server in a separate thread."""
            try:
                asyncio.run(self.server.serve(sockets=[sock]))
            except Exception as e:
                logger.error(f"OAuth callback server error: {e}", exc_info=True)

        self.server_thread = threading.Thread(
            target=run_server, name="keyward-oauth-callback", daemon=True
        )
        self.server_thread.start()
        logger.info(f"OAuth callback server listening on {self.host}:{self.port}")
        return self.redirect_uri

    def wait(self, timeout: Optional[float]) -> Optional[CallbackResult]:
        """Block until a callback arrives; None on timeout."""
        if not self._received.wait(timeout):
            return None
        with self._result_lock:
            return self._result

    def stop(self) -> None:
        """Stop the listener and close its socket."""
        try:
            if self.server is not None:
                self.server.should_exit = True
            if self.server_thread is not None and self.server_thread.is_alive():
                self.server_thread.join(timeout=3.0)
        finally:
            if self._socket is not None:
                try:
                    self._socket.close()
                except OSError as e:
                    logger.debug(f"Error closing callback socket: {e}")
                self._socket = None
            self.server_thread = None
            logger.info("OAuth callback server stopped")

    def __enter__(self) -> "LoopbackCallbackServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
