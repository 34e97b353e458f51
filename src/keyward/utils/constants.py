"""Centralized constants for keyward."""

# Environment variables
ENV_CONFIG_DIR = "KEYWARD_CONFIG_DIR"
ENV_ACCOUNT = "KEYWARD_ACCOUNT"
ENV_SECRET_BACKEND = "KEYWARD_SECRET_BACKEND"
ENV_KEYRING_SERVICE = "KEYWARD_KEYRING_SERVICE"
ENV_KEYRING_PASSWORD = "KEYWARD_KEYRING_PASSWORD"
ENV_CALLBACK_TIMEOUT = "KEYWARD_CALLBACK_TIMEOUT"
ENV_REFRESH_MARGIN = "KEYWARD_REFRESH_MARGIN"
ENV_LOCK_TIMEOUT = "KEYWARD_LOCK_TIMEOUT"
ENV_MANUAL_REDIRECT_URI = "KEYWARD_MANUAL_REDIRECT_URI"
ENV_AUTH_URI = "KEYWARD_AUTH_URI"
ENV_TOKEN_URI = "KEYWARD_TOKEN_URI"
ENV_CLIENT_ID = "GOOGLE_OAUTH_CLIENT_ID"
ENV_CLIENT_SECRET = "GOOGLE_OAUTH_CLIENT_SECRET"

# Google OAuth endpoints
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Default Values
DEFAULT_CONFIG_DIR = "~/.config/keyward"
DEFAULT_KEYRING_SERVICE = "keyward"
DEFAULT_CALLBACK_TIMEOUT = 120
DEFAULT_REFRESH_MARGIN = 60
DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_PENDING_TTL = 600
DEFAULT_MANUAL_REDIRECT_URI = "http://127.0.0.1/oauth2callback"
DEFAULT_KDF_ITERATIONS = 200_000

# Loopback callback
LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/oauth2callback"

# Secret backend kinds
BACKEND_AUTO = "auto"
BACKEND_KEYRING = "keyring"
BACKEND_FILE = "file"

# Token header scheme
DEFAULT_HEADER_NAME = "Authorization"
DEFAULT_HEADER_PREFIX = "Bearer"
