"""
Google OAuth helpers for keyward.

Client secret loading, authorization URL construction with google-auth-oauthlib,
account e-mail discovery and conversion to google-auth credentials for API
client libraries.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..utils.errors import ClientConfigError, OAuthProviderError
from .models import Credential, normalize_account
from .oauth_config import OAuthConfig, get_oauth_config

logger = logging.getLogger(__name__)


def load_client_secrets(config: Optional[OAuthConfig] = None) -> Dict[str, Any]:
    """
    Load OAuth client secrets from environment variables or file.

    Returns:
        Client configuration dict with client_id, client_secret, auth_uri
        and token_uri.

    Raises:
        ClientConfigError: If no usable client configuration is found.
    """
    config = config or get_oauth_config()

    # Try environment variables first
    if config.client_id and config.client_secret:
        logger.debug("Loaded OAuth client from environment variables")
        return {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "auth_uri": config.auth_uri,
            "token_uri": config.token_uri,
        }

    # Fall back to file
    if not os.path.exists(config.client_secrets_path):
        raise ClientConfigError(
            "OAuth client credentials not found. Either set GOOGLE_OAUTH_CLIENT_ID "
            f"and GOOGLE_OAUTH_CLIENT_SECRET, or place client_secret.json in "
            f"{config.config_dir}"
        )

    try:
        with open(config.client_secrets_path, "r") as f:
            client_config = json.load(f)
    except (IOError, json.JSONDecodeError) as e:
        logger.error(f"Error loading client secrets from {config.client_secrets_path}: {e}")
        raise ClientConfigError(f"Unreadable client secrets file: {e}") from e

    for client_type in ("installed", "web"):
        if client_type in client_config:
            section = dict(client_config[client_type])
            section.setdefault("auth_uri", config.auth_uri)
            section.setdefault("token_uri", config.token_uri)
            if not section.get("client_id"):
                break
            logger.info(f"Loaded OAuth client from {config.client_secrets_path}")
            return section

    raise ClientConfigError("Invalid client secrets file format")


def build_authorization_url(
    client_config: Dict[str, Any],
    scopes: List[str],
    redirect_uri: str,
    state: str,
    login_hint: Optional[str] = None,
) -> Tuple[str, Optional[str]]:
    """
    Build an authorization URL with PKCE enabled.

    Args:
        client_config: Client configuration as returned by load_client_secrets.
        scopes: Scopes to request.
        redirect_uri: Redirect URI embedded in the request.
        state: Anti-forgery state value.
        login_hint: Optional account e-mail to preselect.

    Returns:
        Tuple of (authorization URL, PKCE code verifier)
    """
    flow = Flow.from_client_config(
        {"installed": client_config},
        scopes=scopes,
        redirect_uri=redirect_uri,
        autogenerate_code_verifier=True,  # PKCE enabled
    )
    extra = {"login_hint": login_hint} if login_hint else {}
    auth_url, _ = flow.authorization_url(
        state=state,
        access_type="offline",
        prompt="consent",
        **extra,
    )
    logger.debug("Built authorization URL with PKCE")
    return auth_url, getattr(flow, "code_verifier", None)


def to_google_credentials(
    credential: Credential, client_config: Optional[Dict[str, Any]] = None
) -> Credentials:
    """Convert a Credential into google-auth Credentials for API client libraries."""
    client_config = client_config or {}
    expiry = credential.expiry
    return Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_uri=client_config.get("token_uri"),
        client_id=client_config.get("client_id"),
        client_secret=client_config.get("client_secret"),
        scopes=list(credential.scopes) or None,
        # google-auth compares expiry against naive UTC datetimes
        expiry=expiry.replace(tzinfo=None) if expiry else None,
    )


def fetch_account_email(credential: Credential) -> str:
    """
    Look up the e-mail of the account a credential belongs to.

    Raises:
        OAuthProviderError: If the userinfo endpoint fails or has no e-mail.
    """
    try:
        service = build(
            "oauth2",
            "v2",
            credentials=to_google_credentials(credential),
            cache_discovery=False,
        )
        user_info = service.userinfo().get().execute()
    except HttpError as e:
        logger.error(f"HttpError fetching user info: {e.status_code}")
        raise OAuthProviderError("userinfo_failed", str(e)) from e

    email = user_info.get("email")
    if not email:
        raise OAuthProviderError("userinfo_failed", "Userinfo response has no e-mail")
    logger.info(f"Fetched user info: {email}")
    return normalize_account(email)
