"""
Credential manager for keyward.

The only entry points the rest of a tool needs: log accounts in and out,
manage aliases and the default account, list accounts, and obtain an
authenticated transport for an account.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import requests
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials

from ..utils.errors import (
    AccountMismatchError,
    AuthRequiredError,
    KeywardError,
    ScopeMismatchError,
    format_error,
)
from .accounts import AccountResolver, AccountStore
from .credential_store import SecretBackend, get_secret_backend
from .google_auth import fetch_account_email, load_client_secrets, to_google_credentials
from .models import AccountInfo, Credential, normalize_account
from .oauth_config import OAuthConfig, get_oauth_config
from .oauth_flow import FlowVariant, OAuthFlowEngine, generate_state
from .pending_store import PendingAuthorizationStore
from .scopes import IDENTITY_SERVICE, ScopeRegistry, get_scope_registry
from .token_client import OAuthTokenClient
from .token_source import PersistingTokenSource
from .transport import build_authorized_session

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_SERVICES = ("mail", "calendar", "drive", "docs", "sheets", "contacts", "tasks")


class CredentialManager:
    """
    Composes scope registry, secret backend, flow engine and token sources.

    Collaborators default to the process-wide instances; pass them explicitly
    to isolate a manager (tests, embedding).
    """

    def __init__(
        self,
        config: Optional[OAuthConfig] = None,
        backend: Optional[SecretBackend] = None,
        registry: Optional[ScopeRegistry] = None,
        token_client: Optional[OAuthTokenClient] = None,
        account_store: Optional[AccountStore] = None,
        pending_store: Optional[PendingAuthorizationStore] = None,
        client_config: Optional[Dict[str, Any]] = None,
        identity_lookup: Callable[[Credential], str] = fetch_account_email,
        **flow_options: Any,
    ) -> None:
        self.config = config or get_oauth_config()
        self.backend = backend or get_secret_backend()
        self.registry = registry or get_scope_registry()
        self.account_store = account_store or AccountStore(
            self.config.accounts_path, lock_dir=self.config.lock_dir
        )
        self.resolver = AccountResolver(self.backend, self.account_store)
        self.identity_lookup = identity_lookup
        self.flow_options = flow_options
        self._token_client = token_client
        self._client_config = client_config
        self._pending_store = pending_store

    @property
    def client_config(self) -> Dict[str, Any]:
        if self._client_config is None:
            self._client_config = load_client_secrets(self.config)
        return self._client_config

    @property
    def token_client(self) -> OAuthTokenClient:
        if self._token_client is None:
            self._token_client = OAuthTokenClient(self.client_config)
        return self._token_client

    @property
    def pending_store(self) -> PendingAuthorizationStore:
        if self._pending_store is None:
            self._pending_store = PendingAuthorizationStore(self.config.pending_path)
        return self._pending_store

    def create_flow(
        self,
        scopes: Sequence[str],
        header_scheme: Sequence[str],
        login_hint: Optional[str] = None,
    ) -> OAuthFlowEngine:
        """Build a flow engine wired to this manager's configuration."""
        options = dict(self.flow_options)
        options.setdefault("state_generator", generate_state)
        return OAuthFlowEngine(
            client_config=self.client_config,
            token_client=self.token_client,
            scopes=scopes,
            header_scheme=tuple(header_scheme),
            callback_timeout=self.config.callback_timeout,
            manual_redirect_uri=self.config.manual_redirect_uri,
            pending_store=self.pending_store,
            login_hint=login_hint,
            **options,
        )

    def token_source(
        self, account: str, credential: Optional[Credential] = None
    ) -> PersistingTokenSource:
        return PersistingTokenSource(
            account,
            self.backend,
            self.token_client,
            lock_dir=self.config.lock_dir,
            credential=credential,
            refresh_margin=self.config.refresh_margin,
            lock_timeout=self.config.lock_timeout,
        )

    def resolve_account(self, explicit: Optional[str] = None) -> str:
        """Resolve the active account from flag, environment and defaults."""
        return self.resolver.resolve_from_environment(explicit)

    def login(
        self,
        account: Optional[str] = None,
        variant: Union[FlowVariant, str] = FlowVariant.INTERACTIVE,
        services: Iterable[str] = DEFAULT_LOGIN_SERVICES,
        read_only: bool = False,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Optional[str]:
        """
        Authorize an account and store its credential.

        Args:
            account: Account or alias to log in; discovered from the provider
                when None, otherwise checked against the authorizing account.
            variant: Flow variant to run.
            services: Services whose scopes are requested.
            read_only: Request only the read-only scopes.
            code: Authorization code for remote flow step 2.
            state: Optional state value issued by remote flow step 1.

        Returns:
            The canonical account, or None after remote flow step 1.
        """
        variant = FlowVariant(variant)
        services = list(services)
        if IDENTITY_SERVICE not in services:
            services.append(IDENTITY_SERVICE)

        scopes = self.registry.scopes_for(services, read_only)
        header_scheme = self.registry.header_scheme_for(services)
        target = self.account_store.expand(account) if account else None
        engine = self.create_flow(scopes, header_scheme, login_hint=target)

        logger.info(
            f"Starting {variant.value} login for {target or 'new account'} "
            f"({', '.join(services)}{', read-only' if read_only else ''})"
        )
        if variant is FlowVariant.INTERACTIVE:
            credential = engine.run_interactive()
        elif variant is FlowVariant.MANUAL:
            credential = engine.run_manual()
        elif code is None:
            engine.start_remote()
            return None
        else:
            credential = engine.complete_remote(code, state)

        authorized = normalize_account(self.identity_lookup(credential))
        if target and authorized != target:
            raise AccountMismatchError(
                f"Authorization was granted by {authorized}, not the requested account",
                target,
            )
        target = authorized
        self.backend.set(target, credential)
        if self.account_store.get_default() is None:
            self.account_store.set_default(target)
        logger.info(f"Logged in {target}")
        return target

    def logout(self, account: str) -> bool:
        """Delete an account's credential. Aliases are left untouched."""
        account = self.account_store.expand(account)
        existed = account in self.backend.list()
        self.backend.delete(account)
        logger.info(f"Logged out {account}")
        return existed

    def transport_for(
        self,
        account: str,
        services: Optional[Iterable[str]] = None,
        read_only: bool = False,
    ) -> requests.Session:
        """
        Get an HTTP session that authenticates every request as ``account``.

        Raises:
            AuthRequiredError: If no usable credential is stored.
            ScopeMismatchError: If the credential lacks the services' scopes.
        """
        account = self.account_store.expand(account)
        credential = self.backend.get(account)
        if credential is None:
            raise AuthRequiredError("No stored credential; please log in", account)

        if services is not None and credential.scopes:
            missing = self.registry.missing_scopes(credential.scopes, services, read_only)
            if missing:
                raise ScopeMismatchError(
                    "Stored credential lacks scopes for the requested services; "
                    "log in again with broader scope",
                    missing=missing,
                    account=account,
                )

        source = self.token_source(account, credential)
        source.current_token()
        return build_authorized_session(source)

    def google_credentials(self, account: str) -> Credentials:
        """Get google-auth Credentials for API client libraries."""
        account = self.account_store.expand(account)
        credential = self.token_source(account).current_token()
        return to_google_credentials(credential, self.client_config)

    def list_accounts(self, check: bool = False) -> List[AccountInfo]:
        """
        List stored accounts.

        With ``check``, each credential is refreshed if needed and its
        validity recorded; no API call is made.
        """
        default = self.account_store.get_default()
        aliases = self.account_store.aliases()
        accounts = []
        for account in self.backend.list():
            info = AccountInfo(
                account=account,
                aliases=sorted(a for a, target in aliases.items() if target == account),
                is_default=account == default,
            )
            if check:
                try:
                    credential = self.token_source(account).current_token()
                    info.valid = True
                    info.scopes = credential.scopes
                except KeywardError as e:
                    logger.warning(format_error(f"Check of {account}", e))
                    info.valid = False
                    info.error = e.status
                except TransportError as e:
                    logger.warning(f"Account {account} could not be checked: {e}")
                    info.valid = False
                    info.error = "network_error"
            accounts.append(info)
        return accounts

    def set_alias(self, alias: str, account: str) -> None:
        self.account_store.set_alias(alias, account)

    def get_alias(self, alias: str) -> Optional[str]:
        return self.account_store.get_alias(alias)

    def remove_alias(self, alias: str) -> bool:
        return self.account_store.remove_alias(alias)

    def set_default(self, account: Optional[str]) -> None:
        self.account_store.set_default(account)


# Global credential manager instance
_credential_manager: Optional[CredentialManager] = None


def get_credential_manager() -> CredentialManager:
    """Get the global credential manager instance."""
    global _credential_manager
    if _credential_manager is None:
        _credential_manager = CredentialManager()
    return _credential_manager
