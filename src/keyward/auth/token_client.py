"""
Token endpoint client for keyward.

The authorization-code exchange goes through google-auth-oauthlib's
``Flow.fetch_token`` and the refresh grant through google-auth's
``Credentials.refresh``. Results are adapted into keyward ``Credential``
objects.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import google.auth.transport.requests
import requests
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError as OAuthlibInvalidGrantError
from oauthlib.oauth2.rfc6749.errors import MissingTokenError, OAuth2Error

from ..utils.constants import DEFAULT_HEADER_NAME, DEFAULT_HEADER_PREFIX, GOOGLE_AUTH_URI
from ..utils.errors import (
    EmptyTokenError,
    InvalidGrantError,
    OAuthProviderError,
    ScopeMismatchError,
)
from .models import Credential

logger = logging.getLogger(__name__)


def _error_code(error: Any) -> Tuple[str, Optional[str]]:
    """Split a provider ``error`` field into (code, message)."""
    if isinstance(error, dict):
        # Some providers nest the error object
        code = error.get("status") or error.get("code") or "error"
        return str(code), error.get("message")
    return str(error), None


def _check_token_response(response: requests.Response) -> requests.Response:
    """Compliance hook: reject HTTP errors that carry no OAuth error body."""
    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict) or "error" not in payload:
            logger.error(f"Token endpoint returned HTTP {response.status_code}")
            raise OAuthProviderError(f"http_{response.status_code}", response.text[:200])
    return response


def restrict_scopes(
    requested: Iterable[str], granted: Optional[Iterable[str]]
) -> Tuple[str, ...]:
    """
    Limit the scopes recorded for a credential to what the login asked for.

    Providers may return every scope the account granted earlier; only the
    requested ones are kept. Without a ``scope`` in the response the requested
    scopes are assumed.

    Raises:
        ScopeMismatchError: If none of the requested scopes was granted.
    """
    requested = tuple(requested)
    if granted is None:
        return requested
    if isinstance(granted, str):
        granted = granted.split()
    granted = set(granted)
    if not requested:
        return tuple(sorted(granted))

    extra = granted.difference(requested)
    if extra:
        logger.warning(f"Ignoring scopes granted beyond the request: {' '.join(sorted(extra))}")
    kept = tuple(scope for scope in requested if scope in granted)
    if not kept:
        raise ScopeMismatchError(
            "The provider granted none of the requested scopes", missing=requested
        )
    return kept


class OAuthTokenClient:
    """
    Client for the OAuth2 token endpoint.

    Args:
        client_config: Client configuration with client_id, client_secret and
            token_uri (auth_uri defaults to Google's).
        session: requests session whose adapters carry the token requests.
        timeout: Timeout in seconds for the code exchange.

    Transport errors surface as ``google.auth.exceptions.TransportError``.
    """

    def __init__(
        self,
        client_config: Dict[str, Any],
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self.client_id = client_config["client_id"]
        self.client_secret = client_config.get("client_secret")
        self.token_uri = client_config["token_uri"]
        self.auth_uri = client_config.get("auth_uri") or GOOGLE_AUTH_URI
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request = google.auth.transport.requests.Request(session=self.session)

    def _create_flow(self, scopes: List[str], redirect_uri: str) -> Flow:
        flow = Flow.from_client_config(
            {
                "installed": {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret or "",
                    "auth_uri": self.auth_uri,
                    "token_uri": self.token_uri,
                }
            },
            scopes=scopes,
            redirect_uri=redirect_uri,
        )
        for prefix, adapter in self.session.adapters.items():
            flow.oauth2session.mount(prefix, adapter)
        flow.oauth2session.register_compliance_hook(
            "access_token_response", _check_token_response
        )
        return flow

    @staticmethod
    def _to_credential(
        access_token: Optional[str],
        refresh_token: Optional[str],
        expiry: Optional[datetime],
        scopes: Iterable[str],
        header_scheme: Tuple[str, str],
        require_refresh_token: bool,
    ) -> Credential:
        if not access_token:
            raise EmptyTokenError("Token response contained no access token")
        if require_refresh_token and not refresh_token:
            raise EmptyTokenError("Token response contained no refresh token")

        header_name, header_prefix = header_scheme
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=expiry,
            scopes=tuple(scopes),
            header_name=header_name,
            header_prefix=header_prefix,
        )

    def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        requested_scopes: Iterable[str] = (),
        header_scheme: Tuple[str, str] = (DEFAULT_HEADER_NAME, DEFAULT_HEADER_PREFIX),
        require_refresh_token: bool = True,
    ) -> Credential:
        """
        Exchange an authorization code for a token pair.

        Only the requested scopes are recorded on the credential.

        Raises:
            InvalidGrantError: If the code is rejected.
            OAuthProviderError: For any other provider error.
            EmptyTokenError: If a required token is missing.
            ScopeMismatchError: If none of the requested scopes was granted.
        """
        requested_scopes = list(requested_scopes)
        # Google may report scopes granted earlier; restrict_scopes handles them
        os.environ["OAUTHLIB_RELAX_TOKEN_SCOPE"] = "1"

        flow = self._create_flow(requested_scopes, redirect_uri)
        try:
            token = flow.fetch_token(
                code=code, code_verifier=code_verifier, timeout=self.timeout
            )
        except OAuthlibInvalidGrantError as e:
            logger.warning(f"Authorization code rejected: {e.description}")
            raise InvalidGrantError(e.description or "Grant rejected by the provider") from e
        except MissingTokenError as e:
            raise EmptyTokenError("Token response contained no access token") from e
        except OAuth2Error as e:
            error, message = _error_code(e.error)
            logger.warning(f"Token endpoint error: {error} (HTTP {e.status_code})")
            raise OAuthProviderError(error, e.description or message) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(e) from e

        expires_at = token.get("expires_at")
        credential = self._to_credential(
            token.get("access_token"),
            token.get("refresh_token"),
            datetime.fromtimestamp(float(expires_at), timezone.utc) if expires_at else None,
            restrict_scopes(requested_scopes, token.get("scope")),
            header_scheme,
            require_refresh_token,
        )
        logger.info("Successfully exchanged authorization code for tokens")
        return credential

    def refresh(self, credential: Credential) -> Credential:
        """
        Run the refresh grant for a credential.

        A response without a new refresh token keeps the old one. The
        credential keeps its recorded scopes.

        Raises:
            InvalidGrantError: If the refresh token is rejected.
            OAuthProviderError: For any other provider error.
            EmptyTokenError: If there is no refresh token or no access token
                comes back.
        """
        if not credential.refresh_token:
            raise EmptyTokenError("Credential has no refresh token")

        credentials = Credentials(
            token=None,
            refresh_token=credential.refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )
        try:
            credentials.refresh(self._request)
        except RefreshError as e:
            raise self._refresh_error(e) from e

        refreshed = self._to_credential(
            credentials.token,
            credentials.refresh_token,
            credentials.expiry,
            credential.scopes,
            (credential.header_name, credential.header_prefix),
            require_refresh_token=True,
        )
        if refreshed.refresh_token != credential.refresh_token:
            logger.info("Provider rotated the refresh token")
        return refreshed

    @staticmethod
    def _refresh_error(error: RefreshError) -> Exception:
        response_data = error.args[1] if len(error.args) > 1 else None
        if isinstance(response_data, dict) and response_data.get("error"):
            code, message = _error_code(response_data["error"])
            description = response_data.get("error_description") or message
            logger.warning(f"Token endpoint error: {code}")
            if code == "invalid_grant":
                return InvalidGrantError(description or "Grant rejected by the provider")
            return OAuthProviderError(code, description)
        if isinstance(response_data, dict):
            return EmptyTokenError("Token response contained no access token")
        logger.warning(f"Refresh failed: {error}")
        return OAuthProviderError("refresh_failed", str(error))
