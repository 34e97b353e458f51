"""
OAuth authorization-code flows for keyward.

OAuthFlowEngine drives one authorization attempt through the states
IDLE -> AWAITING_AUTHORIZATION -> EXCHANGING_CODE -> AUTHENTICATED, with FAILED
reachable from any non-terminal state. Three variants fill the
AWAITING_AUTHORIZATION step:

- interactive: a loopback listener receives the browser redirect;
- manual: the operator pastes the full redirect URL on stdin;
- remote: step 1 prints the URL and stops, step 2 (a later invocation) is
  handed the authorization code directly.

The engine returns credentials but never persists them.
"""

import enum
import logging
import secrets
import sys
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

from ..utils.constants import (
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_HEADER_NAME,
    DEFAULT_HEADER_PREFIX,
    DEFAULT_MANUAL_REDIRECT_URI,
)
from ..utils.errors import (
    AuthorizationCancelledError,
    AuthorizationTimeoutError,
    KeywardError,
    OAuthProviderError,
    StateMismatchError,
)
from .google_auth import build_authorization_url
from .models import Credential
from .oauth_callback_server import LoopbackCallbackServer
from .pending_store import PendingAuthorizationStore
from .token_client import OAuthTokenClient

logger = logging.getLogger(__name__)


class FlowState(enum.Enum):
    IDLE = "idle"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class FlowVariant(enum.Enum):
    INTERACTIVE = "interactive"
    MANUAL = "manual"
    REMOTE = "remote"


_TERMINAL_STATES = (FlowState.AUTHENTICATED, FlowState.FAILED)


@dataclass(frozen=True)
class RemoteAuthorization:
    """Result of remote flow step 1."""

    auth_url: str
    state: str
    redirect_uri: str


def generate_state() -> str:
    """Random anti-forgery state value."""
    return secrets.token_urlsafe(24)


def parse_redirect_url(url: str) -> Dict[str, Optional[str]]:
    """Extract OAuth response parameters from a redirect URL."""
    parsed = urlparse(url.strip())
    params = parse_qs(parsed.query)
    if not params and parsed.fragment:
        params = parse_qs(parsed.fragment)

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    return {
        "code": first("code"),
        "state": first("state"),
        "error": first("error"),
        "error_description": first("error_description"),
    }


def _stderr_prompt(message: str) -> None:
    sys.stderr.write(message + "\n")
    sys.stderr.flush()


def _stdin_reader() -> str:
    return sys.stdin.readline()


class OAuthFlowEngine:
    """
    Runs a single authorization-code flow.

    Args:
        client_config: OAuth client configuration (client_id, auth_uri, ...).
        token_client: Client for the token endpoint.
        scopes: Scopes to request.
        header_scheme: (header name, prefix) stamped on the resulting credential.
        callback_timeout: Seconds to wait for the interactive callback.
        manual_redirect_uri: Redirect URI for the manual and remote variants.
        pending_store: Store bridging the two remote-flow invocations.
        prompt: Callable used to surface URLs and instructions.
        input_reader: Callable returning one line of operator input.
        open_browser: Whether the interactive variant opens a browser.
        state_generator: Factory for anti-forgery state values.
        login_hint: Optional account e-mail to preselect at the provider.
    """

    def __init__(
        self,
        client_config: Dict[str, Any],
        token_client: OAuthTokenClient,
        scopes: Sequence[str],
        header_scheme: Tuple[str, str] = (DEFAULT_HEADER_NAME, DEFAULT_HEADER_PREFIX),
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        manual_redirect_uri: str = DEFAULT_MANUAL_REDIRECT_URI,
        pending_store: Optional[PendingAuthorizationStore] = None,
        prompt: Callable[[str], None] = _stderr_prompt,
        input_reader: Callable[[], str] = _stdin_reader,
        open_browser: bool = True,
        state_generator: Callable[[], str] = generate_state,
        login_hint: Optional[str] = None,
    ) -> None:
        self.client_config = client_config
        self.token_client = token_client
        self.scopes: List[str] = list(scopes)
        self.header_scheme = header_scheme
        self.callback_timeout = callback_timeout
        self.manual_redirect_uri = manual_redirect_uri
        self.pending_store = pending_store
        self.prompt = prompt
        self.input_reader = input_reader
        self.open_browser = open_browser
        self.state_generator = state_generator
        self.login_hint = login_hint
        self.state = FlowState.IDLE
        self._issued_state: Optional[str] = None

    def _transition(self, new_state: FlowState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"Flow already finished ({self.state.value})")
        logger.debug(f"OAuth flow: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _fail(self, error: KeywardError) -> KeywardError:
        if self.state not in _TERMINAL_STATES:
            logger.error(f"OAuth flow failed in {self.state.value}: {error}")
            self.state = FlowState.FAILED
        return error

    def _begin(self, redirect_uri: str) -> Tuple[str, Optional[str]]:
        self._transition(FlowState.AWAITING_AUTHORIZATION)
        self._issued_state = self.state_generator()
        auth_url, code_verifier = build_authorization_url(
            self.client_config,
            self.scopes,
            redirect_uri,
            self._issued_state,
            login_hint=self.login_hint,
        )
        logger.info(f"Auth flow started. State: {self._issued_state[:8]}...")
        return auth_url, code_verifier

    def _check_response(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        error_description: Optional[str] = None,
    ) -> str:
        if state != self._issued_state:
            raise self._fail(
                StateMismatchError("OAuth state does not match the issued request")
            )
        if error:
            raise self._fail(OAuthProviderError(error, error_description))
        if not code:
            raise self._fail(
                OAuthProviderError("missing_code", "No authorization code in the response")
            )
        return code

    def _exchange(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str],
        scopes: Optional[Sequence[str]] = None,
        header_scheme: Optional[Tuple[str, str]] = None,
    ) -> Credential:
        self._transition(FlowState.EXCHANGING_CODE)
        try:
            credential = self.token_client.exchange_code(
                code,
                redirect_uri,
                code_verifier=code_verifier,
                requested_scopes=scopes if scopes is not None else self.scopes,
                header_scheme=header_scheme or self.header_scheme,
                require_refresh_token=True,
            )
        except KeywardError as e:
            raise self._fail(e)
        except Exception:
            self.state = FlowState.FAILED
            raise
        self._transition(FlowState.AUTHENTICATED)
        return credential

    def run_interactive(self) -> Credential:
        """Run the loopback listener flow."""
        server = LoopbackCallbackServer()
        try:
            redirect_uri = server.start()
            auth_url, code_verifier = self._begin(redirect_uri)

            self.prompt(f"Open this URL in your browser to authorize:\n\n  {auth_url}\n")
            if self.open_browser:
                try:
                    if webbrowser.open(auth_url):
                        self.prompt("(Browser opened automatically)")
                except webbrowser.Error as e:
                    logger.debug(f"Could not open browser: {e}")
            self.prompt(f"Waiting up to {int(self.callback_timeout)}s for authorization...")

            try:
                result = server.wait(self.callback_timeout)
            except KeyboardInterrupt:
                raise self._fail(
                    AuthorizationCancelledError("Authorization cancelled by user")
                ) from None
        except BaseException:
            if self.state not in _TERMINAL_STATES:
                self.state = FlowState.FAILED
            raise
        finally:
            server.stop()

        if result is None:
            raise self._fail(
                AuthorizationTimeoutError(
                    f"No authorization callback within {int(self.callback_timeout)}s"
                )
            )

        code = self._check_response(
            result.code, result.state, result.error, result.error_description
        )
        return self._exchange(code, redirect_uri, code_verifier)

    def run_manual(self) -> Credential:
        """Run the copy/paste flow: the operator pastes the full redirect URL."""
        redirect_uri = self.manual_redirect_uri
        auth_url, code_verifier = self._begin(redirect_uri)

        self.prompt(
            f"Open this URL in a browser and authorize:\n\n  {auth_url}\n\n"
            "Your browser will be redirected to a page that may fail to load. "
            "Copy the full URL from the address bar and paste it here:"
        )
        try:
            line = self.input_reader()
        except (KeyboardInterrupt, EOFError):
            raise self._fail(
                AuthorizationCancelledError("Authorization cancelled by user")
            ) from None

        if not line or not line.strip():
            raise self._fail(AuthorizationCancelledError("No redirect URL provided"))

        params = parse_redirect_url(line)
        code = self._check_response(
            params["code"], params["state"], params["error"], params["error_description"]
        )
        return self._exchange(code, redirect_uri, code_verifier)

    def start_remote(self) -> RemoteAuthorization:
        """
        Remote flow step 1: surface the authorization URL and stop.

        The pending request is recorded so step 2 can reuse the PKCE verifier
        and redirect URI.
        """
        redirect_uri = self.manual_redirect_uri
        auth_url, code_verifier = self._begin(redirect_uri)
        if self.pending_store is not None:
            self.pending_store.store(
                self._issued_state,
                redirect_uri=redirect_uri,
                scopes=self.scopes,
                code_verifier=code_verifier,
                header_scheme=list(self.header_scheme),
            )
        self.prompt(
            f"Open this URL in a browser and authorize:\n\n  {auth_url}\n\n"
            "Then run the login again with the 'code' value from the redirect URL."
        )
        return RemoteAuthorization(
            auth_url=auth_url, state=self._issued_state, redirect_uri=redirect_uri
        )

    def complete_remote(self, code: str, state: Optional[str] = None) -> Credential:
        """
        Remote flow step 2: exchange a code obtained by an earlier step 1.

        If a pending request exists (matching ``state`` when given, else the
        newest) its verifier, redirect URI and scopes are used. Without one
        the exchange runs unbound, with the configured redirect URI.
        """
        if not code or not code.strip():
            raise self._fail(AuthorizationCancelledError("No authorization code provided"))

        pending = None
        if self.pending_store is not None:
            try:
                pending = self.pending_store.consume(state)
            except KeywardError as e:
                raise self._fail(e)

        if pending is None:
            logger.warning(
                "No pending authorization found; exchanging code without PKCE binding"
            )
            return self._exchange(code.strip(), self.manual_redirect_uri, None)

        header_scheme = pending.get("header_scheme")
        return self._exchange(
            code.strip(),
            pending["redirect_uri"],
            pending.get("code_verifier"),
            scopes=pending.get("scopes"),
            header_scheme=tuple(header_scheme) if header_scheme else None,
        )
