"""keyward - credential and session management for OAuth2 command-line tools.

This package persists OAuth2 credentials for multiple accounts, runs the
authorization flows that create them, and hands out HTTP transports whose
access tokens are refreshed and re-persisted transparently.
"""
from .auth import CredentialManager, get_credential_manager

__version__ = "0.1.0"
__all__ = ["CredentialManager", "get_credential_manager"]
