"""
Account aliases and resolution for keyward.

AccountStore keeps the non-secret account metadata (aliases, default account)
in a JSON file. AccountResolver picks the account for an invocation.
"""

import json
import logging
import os
from contextlib import contextmanager
from threading import RLock
from typing import Dict, Iterator, List, Optional

from ..utils.constants import ENV_ACCOUNT
from ..utils.errors import AuthRequiredError, InvalidAliasError, SecretStorageError
from ..utils.files import atomic_write_json
from .credential_store import SecretBackend
from .locking import AccountLock
from .models import normalize_account

logger = logging.getLogger(__name__)

# Lock name for the account file; never a valid account e-mail
_STORE_LOCK_NAME = "@accounts"


class AccountStore:
    """
    Alias table and default account, persisted as JSON.

    Writes read, change and replace the whole file while holding an
    inter-process lock in ``lock_dir`` (default: a ``locks`` directory next
    to the file), so concurrent invocations never drop each other's updates.
    """

    def __init__(
        self, path: str, lock_dir: Optional[str] = None, lock_timeout: float = 10.0
    ) -> None:
        self._path = path
        self._lock_dir = lock_dir or os.path.join(os.path.dirname(path), "locks")
        self._lock_timeout = lock_timeout
        self._lock = RLock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            lock = AccountLock(self._lock_dir, _STORE_LOCK_NAME)
            if not lock.acquire(self._lock_timeout):
                raise SecretStorageError(f"Timed out waiting to update {self._path}")
            try:
                yield
            finally:
                lock.release()

    def _read(self) -> Dict[str, object]:
        if not os.path.exists(self._path):
            return {"aliases": {}, "default": None}
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (IOError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read account file {self._path}: {e}")
            return {"aliases": {}, "default": None}
        if not isinstance(data, dict):
            logger.warning("Invalid account file format, ignoring")
            return {"aliases": {}, "default": None}
        aliases = data.get("aliases")
        data["aliases"] = aliases if isinstance(aliases, dict) else {}
        data.setdefault("default", None)
        return data

    def _write(self, data: Dict[str, object]) -> None:
        atomic_write_json(self._path, data)

    def aliases(self) -> Dict[str, str]:
        """Get the alias -> account mapping."""
        with self._lock:
            return dict(self._read()["aliases"])

    def set_alias(self, alias: str, account: str) -> None:
        """
        Point an alias at an account, replacing any previous target.

        Raises:
            InvalidAliasError: If the alias is empty or looks like an account.
        """
        alias = normalize_account(alias)
        if not alias or "@" in alias or any(c.isspace() for c in alias):
            raise InvalidAliasError(f"Invalid alias '{alias}'")
        account = self.expand(account)
        with self._locked():
            data = self._read()
            data["aliases"][alias] = account
            self._write(data)
        logger.info(f"Alias '{alias}' -> {account}")

    def get_alias(self, alias: str) -> Optional[str]:
        return self.aliases().get(normalize_account(alias))

    def remove_alias(self, alias: str) -> bool:
        alias = normalize_account(alias)
        with self._locked():
            data = self._read()
            if alias not in data["aliases"]:
                return False
            del data["aliases"][alias]
            self._write(data)
        logger.info(f"Removed alias '{alias}'")
        return True

    def aliases_for(self, account: str) -> List[str]:
        account = normalize_account(account)
        return sorted(a for a, target in self.aliases().items() if target == account)

    def expand(self, value: str) -> str:
        """Expand an alias to its account; other values are only normalized."""
        value = normalize_account(value)
        return self.aliases().get(value, value)

    def get_default(self) -> Optional[str]:
        with self._lock:
            default = self._read().get("default")
        return default if isinstance(default, str) and default else None

    def set_default(self, account: Optional[str]) -> None:
        with self._locked():
            data = self._read()
            data["default"] = self.expand(account) if account else None
            self._write(data)
        logger.info(f"Default account set to {data['default']}")


class AccountResolver:
    """
    Determines the active account.

    Priority: explicit flag, environment override, configured default, the
    only stored account. Aliases are expanded at each step.
    """

    def __init__(self, backend: SecretBackend, store: AccountStore) -> None:
        self.backend = backend
        self.store = store

    def resolve(
        self,
        explicit: Optional[str] = None,
        env_override: Optional[str] = None,
        configured_default: Optional[str] = None,
    ) -> str:
        """
        Resolve the account for an invocation.

        Raises:
            AuthRequiredError: If no candidate applies.
        """
        for source, value in (
            ("flag", explicit),
            ("environment", env_override),
            ("default", configured_default),
        ):
            if value and value.strip():
                account = self.store.expand(value)
                logger.debug(f"Resolved account {account} from {source}")
                return account

        stored = self.backend.list()
        if len(stored) == 1:
            logger.debug(f"Resolved sole stored account {stored[0]}")
            return stored[0]

        if not stored:
            raise AuthRequiredError("No stored accounts; please log in")
        raise AuthRequiredError(
            f"{len(stored)} accounts stored; choose one explicitly or set a default"
        )

    def resolve_from_environment(self, explicit: Optional[str] = None) -> str:
        """Resolve using the KEYWARD_ACCOUNT variable and the stored default."""
        return self.resolve(
            explicit=explicit,
            env_override=os.getenv(ENV_ACCOUNT),
            configured_default=self.store.get_default(),
        )
