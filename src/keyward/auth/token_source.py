"""
Persisting token source for keyward.

Wraps one account's credential, refreshes it when it is about to expire and
persists the rotated credential before handing it out. Refreshes for the same
account are serialized across threads and processes.
"""

import logging
from datetime import datetime
from typing import Optional

from ..utils.constants import DEFAULT_LOCK_TIMEOUT, DEFAULT_REFRESH_MARGIN
from ..utils.errors import (
    AuthRequiredError,
    BackendUnavailableError,
    InvalidGrantError,
    RefreshLockTimeoutError,
    SecretStorageError,
)
from .credential_store import SecretBackend
from .locking import refresh_lock
from .models import Credential, normalize_account, utcnow
from .token_client import OAuthTokenClient

logger = logging.getLogger(__name__)


class PersistingTokenSource:
    """
    Token source that refreshes and persists one account's credential.

    Args:
        account: Canonical account identifier.
        backend: Secret backend holding the credential.
        token_client: Token endpoint client used for the refresh grant.
        lock_dir: Directory for the per-account inter-process lock files.
        credential: Already loaded credential; read from the backend if None.
        refresh_margin: Seconds before expiry at which a token counts as stale.
        lock_timeout: Seconds to wait for another process's refresh.
    """

    def __init__(
        self,
        account: str,
        backend: SecretBackend,
        token_client: OAuthTokenClient,
        lock_dir: str,
        credential: Optional[Credential] = None,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.account = normalize_account(account)
        self.backend = backend
        self.token_client = token_client
        self.lock_dir = lock_dir
        self.refresh_margin = refresh_margin
        self.lock_timeout = lock_timeout
        self.last_refresh: Optional[datetime] = None
        self._credential = credential
        self._unpersisted = False

    @property
    def fresh(self) -> bool:
        """Whether the cached credential can be used without refreshing."""
        return self._credential is not None and self._credential.is_fresh(
            self.refresh_margin
        )

    def _load(self) -> Credential:
        credential = self.backend.get(self.account)
        if credential is None:
            raise AuthRequiredError("No stored credential; please log in", self.account)
        return credential

    def current_token(self) -> Credential:
        """
        Get a credential with a usable access token.

        Raises:
            AuthRequiredError: If there is no credential, no refresh token, or
                the provider rejected the refresh token.
            RefreshLockTimeoutError: If another process holds the refresh lock
                and has not left a fresh credential behind.
        """
        if self._credential is None:
            self._credential = self._load()
        if self.fresh:
            return self._credential

        with refresh_lock(self.lock_dir, self.account, self.lock_timeout) as acquired:
            # Another invocation may have refreshed while we waited
            stored = self._load()
            if stored.is_fresh(self.refresh_margin):
                logger.debug(f"Using credential refreshed elsewhere for {self.account}")
                self._credential = stored
                return stored

            if not acquired:
                raise RefreshLockTimeoutError(
                    "Another process is refreshing this account's token", self.account
                )

            candidate = stored
            if self._unpersisted and self._credential is not None:
                # Our last refresh was never persisted; its refresh token is newer
                candidate = self._credential
            self._credential = self._refresh(candidate)
            return self._credential

    def _refresh(self, stored: Credential) -> Credential:
        """Refresh and persist. Caller must hold the refresh lock."""
        if not stored.refresh_token:
            raise AuthRequiredError(
                "Stored credential has no refresh token; please log in again", self.account
            )

        logger.info(f"Refreshing access token for {self.account}")
        try:
            refreshed = self.token_client.refresh(stored)
        except InvalidGrantError as e:
            logger.warning(f"Refresh token rejected for {self.account}; clearing it")
            self.backend.delete(self.account)
            self._credential = None
            raise AuthRequiredError(
                "Stored refresh token was rejected; please log in again", self.account
            ) from e

        self.last_refresh = utcnow()
        try:
            self.backend.set(self.account, refreshed)
            self._unpersisted = False
        except (SecretStorageError, BackendUnavailableError) as e:
            logger.warning(
                f"Could not persist refreshed credential for {self.account}: {e}"
            )
            self._unpersisted = True
        return refreshed
