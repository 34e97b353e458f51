"""
OAuth2 Authentication Package for keyward.

This package provides:
- A scope registry mapping services to OAuth scopes
- Secret backends (platform keyring, encrypted file) with a resolution chain
- Interactive, manual and remote authorization-code flows
- A token source that refreshes and persists credentials under a cross-process lock
- Account aliases, default account and account resolution
"""

from .scopes import DEFAULT_SCOPE_TABLE, ScopeRegistry, ScopeSet, get_scope_registry
from .models import AccountInfo, Credential
from .credential_store import (
    EncryptedFileSecretBackend,
    KeyringSecretBackend,
    SecretBackend,
    get_secret_backend,
    resolve_secret_backend,
    set_secret_backend,
)
from .oauth_flow import FlowState, FlowVariant, OAuthFlowEngine
from .token_client import OAuthTokenClient
from .token_source import PersistingTokenSource
from .accounts import AccountResolver, AccountStore
from .credential_manager import CredentialManager, get_credential_manager

__all__ = [
    # Scopes
    "DEFAULT_SCOPE_TABLE",
    "ScopeRegistry",
    "ScopeSet",
    "get_scope_registry",
    # Models
    "AccountInfo",
    "Credential",
    # Secret backends
    "SecretBackend",
    "KeyringSecretBackend",
    "EncryptedFileSecretBackend",
    "get_secret_backend",
    "resolve_secret_backend",
    "set_secret_backend",
    # Flows
    "FlowState",
    "FlowVariant",
    "OAuthFlowEngine",
    "OAuthTokenClient",
    # Token source
    "PersistingTokenSource",
    # Accounts
    "AccountResolver",
    "AccountStore",
    # Manager
    "CredentialManager",
    "get_credential_manager",
]
