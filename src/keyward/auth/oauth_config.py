"""
OAuth Configuration Management for keyward.

This module centralizes OAuth-related configuration to eliminate hardcoded values.
Values come from environment variables, optionally loaded from a .env file.
"""

import os
from typing import Optional

from dotenv import load_dotenv

from ..utils.constants import (
    BACKEND_AUTO,
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_CONFIG_DIR,
    DEFAULT_KEYRING_SERVICE,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MANUAL_REDIRECT_URI,
    DEFAULT_REFRESH_MARGIN,
    ENV_AUTH_URI,
    ENV_CALLBACK_TIMEOUT,
    ENV_CLIENT_ID,
    ENV_CLIENT_SECRET,
    ENV_CONFIG_DIR,
    ENV_KEYRING_PASSWORD,
    ENV_KEYRING_SERVICE,
    ENV_LOCK_TIMEOUT,
    ENV_MANUAL_REDIRECT_URI,
    ENV_REFRESH_MARGIN,
    ENV_SECRET_BACKEND,
    ENV_TOKEN_URI,
    GOOGLE_AUTH_URI,
    GOOGLE_TOKEN_URI,
)


class OAuthConfig:
    """
    Centralized OAuth configuration management.

    Provides a single source of truth for all OAuth-related configuration values.
    """

    def __init__(self) -> None:
        # Configuration directory (accounts, encrypted secrets, locks)
        self.config_dir = os.path.expanduser(
            os.getenv(ENV_CONFIG_DIR, DEFAULT_CONFIG_DIR)
        )

        # OAuth client configuration (from environment or client_secret.json)
        self.client_id = os.getenv(ENV_CLIENT_ID)
        self.client_secret = os.getenv(ENV_CLIENT_SECRET)
        self.client_secrets_path = os.path.join(self.config_dir, "client_secret.json")

        # Provider endpoints
        self.auth_uri = os.getenv(ENV_AUTH_URI, GOOGLE_AUTH_URI)
        self.token_uri = os.getenv(ENV_TOKEN_URI, GOOGLE_TOKEN_URI)

        # Secret storage
        self.secret_backend = os.getenv(ENV_SECRET_BACKEND, BACKEND_AUTO).strip().lower()
        self.keyring_service = os.getenv(ENV_KEYRING_SERVICE, DEFAULT_KEYRING_SERVICE)
        self.keyring_password = os.getenv(ENV_KEYRING_PASSWORD)

        # Flow and refresh timing
        self.callback_timeout = float(
            os.getenv(ENV_CALLBACK_TIMEOUT, str(DEFAULT_CALLBACK_TIMEOUT))
        )
        self.refresh_margin = float(
            os.getenv(ENV_REFRESH_MARGIN, str(DEFAULT_REFRESH_MARGIN))
        )
        self.lock_timeout = float(os.getenv(ENV_LOCK_TIMEOUT, str(DEFAULT_LOCK_TIMEOUT)))

        # Redirect URI for manual and remote flows (no listener behind it)
        self.manual_redirect_uri = os.getenv(
            ENV_MANUAL_REDIRECT_URI, DEFAULT_MANUAL_REDIRECT_URI
        )

    @property
    def secrets_dir(self) -> str:
        """Directory of the encrypted-file secret backend."""
        return os.path.join(self.config_dir, "secrets")

    @property
    def lock_dir(self) -> str:
        """Directory holding per-account refresh lock files."""
        return os.path.join(self.config_dir, "locks")

    @property
    def accounts_path(self) -> str:
        """Path of the alias and default-account file."""
        return os.path.join(self.config_dir, "accounts.json")

    @property
    def pending_path(self) -> str:
        """Path of the pending remote authorization file."""
        return os.path.join(self.config_dir, "pending_authorizations.json")


# Global configuration instance
_oauth_config: Optional[OAuthConfig] = None


def get_oauth_config() -> OAuthConfig:
    """Get the global OAuth configuration instance."""
    global _oauth_config
    if _oauth_config is None:
        load_dotenv()
        _oauth_config = OAuthConfig()
    return _oauth_config


def reload_oauth_config() -> OAuthConfig:
    """Reload the OAuth configuration from environment variables."""
    global _oauth_config
    _oauth_config = OAuthConfig()
    return _oauth_config

