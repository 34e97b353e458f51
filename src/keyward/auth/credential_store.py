"""
Credential Store for keyward.

This module provides a standardized interface for credential storage and retrieval.
Two backends implement it: the platform credential store (through ``keyring``)
and an encrypted-file store used as the universal fallback. The backend is
chosen once per process through a resolution chain.
"""

import base64
import getpass
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from ..utils.constants import (
    BACKEND_AUTO,
    BACKEND_FILE,
    BACKEND_KEYRING,
    DEFAULT_KDF_ITERATIONS,
    DEFAULT_KEYRING_SERVICE,
    ENV_KEYRING_PASSWORD,
)
from ..utils.errors import BackendUnavailableError, SecretStorageError
from ..utils.files import atomic_write_bytes
from .models import Credential, normalize_account
from .oauth_config import OAuthConfig, get_oauth_config

logger = logging.getLogger(__name__)


class SecretBackend(ABC):
    """Abstract base class for credential storage."""

    kind: str = ""

    def __init__(self, namespace: str = DEFAULT_KEYRING_SERVICE) -> None:
        self.namespace = namespace

    @abstractmethod
    def get(self, account: str) -> Optional[Credential]:
        """Get the credential for an account, or None if none is stored."""
        pass

    @abstractmethod
    def set(self, account: str, credential: Credential) -> None:
        """Store (replace) the credential for an account."""
        pass

    @abstractmethod
    def delete(self, account: str) -> None:
        """Delete the credential for an account; missing entries are ignored."""
        pass

    @abstractmethod
    def list(self) -> List[str]:
        """List all accounts with stored credentials."""
        pass


def _encode_credential(credential: Credential) -> str:
    return json.dumps(credential.to_dict())


def _decode_credential(account: str, raw: str) -> Credential:
    try:
        return Credential.from_dict(json.loads(raw))
    except (ValueError, TypeError, AttributeError) as e:
        raise SecretStorageError(f"Stored credential is corrupt: {e}", account) from e


class KeyringSecretBackend(SecretBackend):
    """Credential store backed by the platform keyring.

    Keyrings cannot enumerate their entries, so the account list is kept in
    an index entry under the same service name.
    """

    kind = BACKEND_KEYRING
    INDEX_KEY = "__accounts__"

    def __init__(
        self,
        namespace: str = DEFAULT_KEYRING_SERVICE,
        backend: Optional[KeyringBackend] = None,
    ) -> None:
        super().__init__(namespace)
        self._keyring = backend or keyring.get_keyring()
        priority = getattr(self._keyring, "priority", 0)
        if priority is None or priority <= 0:
            raise BackendUnavailableError(
                f"No usable platform keyring ({type(self._keyring).__name__})"
            )
        logger.info(
            f"KeyringSecretBackend initialized: {type(self._keyring).__name__} "
            f"(service: {namespace})"
        )

    def _read_index(self) -> List[str]:
        raw = self._keyring.get_password(self.namespace, self.INDEX_KEY)
        if not raw:
            return []
        try:
            accounts = json.loads(raw)
        except ValueError:
            logger.warning("Keyring account index is corrupt, rebuilding")
            return []
        return [a for a in accounts if isinstance(a, str)]

    def _write_index(self, accounts: List[str]) -> None:
        self._keyring.set_password(
            self.namespace, self.INDEX_KEY, json.dumps(sorted(set(accounts)))
        )

    def get(self, account: str) -> Optional[Credential]:
        account = normalize_account(account)
        try:
            raw = self._keyring.get_password(self.namespace, account)
        except KeyringError as e:
            raise SecretStorageError(f"Keyring read failed: {e}", account) from e
        if raw is None:
            logger.debug(f"No keyring entry found for {account}")
            return None
        return _decode_credential(account, raw)

    def set(self, account: str, credential: Credential) -> None:
        account = normalize_account(account)
        try:
            self._keyring.set_password(
                self.namespace, account, _encode_credential(credential)
            )
            index = self._read_index()
            if account not in index:
                self._write_index(index + [account])
        except KeyringError as e:
            raise SecretStorageError(f"Keyring write failed: {e}", account) from e
        logger.info(f"Stored credentials for {account} in keyring")

    def delete(self, account: str) -> None:
        account = normalize_account(account)
        try:
            try:
                self._keyring.delete_password(self.namespace, account)
            except PasswordDeleteError:
                logger.debug(f"No keyring entry to delete for {account}")
            index = self._read_index()
            if account in index:
                self._write_index([a for a in index if a != account])
        except KeyringError as e:
            raise SecretStorageError(f"Keyring delete failed: {e}", account) from e
        logger.info(f"Deleted credentials for {account} from keyring")

    def list(self) -> List[str]:
        try:
            return sorted(self._read_index())
        except KeyringError as e:
            raise SecretStorageError(f"Keyring read failed: {e}") from e


def derive_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_secret(plaintext: str, passphrase: str, iterations: int = DEFAULT_KDF_ITERATIONS) -> Dict[str, Any]:
    salt = os.urandom(16)
    nonce = os.urandom(12)
    ct = AESGCM(derive_key(passphrase, salt, iterations)).encrypt(
        nonce, plaintext.encode("utf-8"), None
    )
    return {
        "enc": "AESGCM",
        "kdf": "PBKDF2-HMAC-SHA256",
        "iter": iterations,
        "salt": base64.b64encode(salt).decode(),
        "nonce": base64.b64encode(nonce).decode(),
        "ct": base64.b64encode(ct).decode(),
    }


def decrypt_secret(envelope: Dict[str, Any], passphrase: str) -> str:
    if not isinstance(envelope, dict) or envelope.get("enc") != "AESGCM":
        raise ValueError("Unsupported encrypted secret format")
    iterations = int(envelope.get("iter", DEFAULT_KDF_ITERATIONS))
    salt = base64.b64decode(envelope["salt"])
    nonce = base64.b64decode(envelope["nonce"])
    ct = base64.b64decode(envelope["ct"])
    key = derive_key(passphrase, salt, iterations)
    return AESGCM(key).decrypt(nonce, ct, None).decode("utf-8")


class EncryptedFileSecretBackend(SecretBackend):
    """Credential store that keeps one AES-GCM encrypted file per account."""

    kind = BACKEND_FILE
    SUFFIX = ".enc"

    def __init__(
        self,
        base_dir: str,
        passphrase: Optional[str] = None,
        namespace: str = DEFAULT_KEYRING_SERVICE,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> None:
        """
        Initialize the encrypted file store.

        Args:
            base_dir: Base directory; files live in ``base_dir/namespace``.
            passphrase: Key passphrase. If None it is prompted for on first
                use when stdin is a terminal.
            namespace: Namespace separating tool installations.
            iterations: PBKDF2 iteration count for new writes.
        """
        super().__init__(namespace)
        self.base_dir = os.path.join(base_dir, namespace)
        self.iterations = iterations
        self._passphrase = passphrase
        self._ensure_dir_exists()
        logger.info(f"EncryptedFileSecretBackend initialized: {self.base_dir}")

    def _ensure_dir_exists(self) -> None:
        """Ensure the secrets directory exists."""
        if not os.path.exists(self.base_dir):
            os.makedirs(self.base_dir, mode=0o700, exist_ok=True)
            logger.info(f"Created secrets directory: {self.base_dir}")

    def _get_passphrase(self) -> str:
        if self._passphrase:
            return self._passphrase
        if sys.stdin is not None and sys.stdin.isatty():
            self._passphrase = getpass.getpass("keyward secrets passphrase: ")
            if self._passphrase:
                return self._passphrase
        raise BackendUnavailableError(
            f"Encrypted file store needs a passphrase; set {ENV_KEYRING_PASSWORD}"
        )

    def _account_to_filename(self, account: str) -> str:
        """
        Convert an account to a safe filename using URL-safe base64 encoding.

        The transformation is reversible for any identifier.
        """
        encoded = base64.urlsafe_b64encode(account.encode("utf-8")).decode("ascii")
        return encoded.rstrip("=")

    def _filename_to_account(self, filename: str) -> str:
        padding = 4 - (len(filename) % 4)
        if padding != 4:
            filename += "=" * padding
        return base64.urlsafe_b64decode(filename.encode("ascii")).decode("utf-8")

    def _get_path(self, account: str) -> str:
        return os.path.join(
            self.base_dir, f"{self._account_to_filename(account)}{self.SUFFIX}"
        )

    def get(self, account: str) -> Optional[Credential]:
        account = normalize_account(account)
        path = self._get_path(account)
        if not os.path.exists(path):
            logger.debug(f"No credential file found for {account}")
            return None

        try:
            with open(path, "r") as f:
                envelope = json.load(f)
        except (IOError, ValueError) as e:
            raise SecretStorageError(f"Error reading credential file: {e}", account) from e

        try:
            plaintext = decrypt_secret(envelope, self._get_passphrase())
        except InvalidTag:
            raise SecretStorageError(
                "Could not decrypt stored credential (wrong passphrase?)", account
            ) from None
        except (ValueError, KeyError) as e:
            raise SecretStorageError(f"Malformed credential file: {e}", account) from e

        logger.debug(f"Loaded credentials for {account}")
        return _decode_credential(account, plaintext)

    def set(self, account: str, credential: Credential) -> None:
        account = normalize_account(account)
        envelope = encrypt_secret(
            _encode_credential(credential), self._get_passphrase(), self.iterations
        )
        try:
            self._ensure_dir_exists()
            atomic_write_bytes(
                self._get_path(account), json.dumps(envelope).encode("utf-8")
            )
        except OSError as e:
            raise SecretStorageError(f"Error storing credentials: {e}", account) from e
        logger.info(f"Stored credentials for {account}")

    def delete(self, account: str) -> None:
        account = normalize_account(account)
        path = self._get_path(account)
        try:
            if os.path.exists(path):
                os.remove(path)
                logger.info(f"Deleted credentials for {account}")
        except OSError as e:
            raise SecretStorageError(f"Error deleting credentials: {e}", account) from e

    def list(self) -> List[str]:
        if not os.path.exists(self.base_dir):
            return []

        accounts = []
        try:
            for filename in os.listdir(self.base_dir):
                if filename.endswith(self.SUFFIX):
                    encoded_part = filename[: -len(self.SUFFIX)]
                    try:
                        accounts.append(self._filename_to_account(encoded_part))
                    except (ValueError, UnicodeDecodeError) as e:
                        logger.warning(f"Could not decode credential file {filename}: {e}")
        except OSError as e:
            raise SecretStorageError(f"Error listing credential files: {e}") from e

        logger.debug(f"Found {len(accounts)} accounts with credentials")
        return sorted(accounts)


def _open_keyring(config: OAuthConfig) -> SecretBackend:
    return KeyringSecretBackend(namespace=config.keyring_service)


def _open_file(config: OAuthConfig) -> SecretBackend:
    return EncryptedFileSecretBackend(
        config.secrets_dir,
        passphrase=config.keyring_password,
        namespace=config.keyring_service,
    )


_OPENERS = {
    BACKEND_KEYRING: _open_keyring,
    BACKEND_FILE: _open_file,
}


def resolve_secret_backend(
    override: Optional[str] = None, config: Optional[OAuthConfig] = None
) -> SecretBackend:
    """
    Open the secret backend following the resolution chain.

    Order: explicit override, configured preference, platform keyring
    auto-detection, encrypted file.

    Raises:
        BackendUnavailableError: If every candidate fails to open.
    """
    config = config or get_oauth_config()
    chain: List[str] = []
    for preference in (override, config.secret_backend):
        if not preference:
            continue
        preference = preference.strip().lower()
        if preference == BACKEND_AUTO:
            continue
        if preference not in _OPENERS:
            logger.warning(f"Ignoring unknown secret backend '{preference}'")
            continue
        chain.append(preference)
    chain.extend([BACKEND_KEYRING, BACKEND_FILE])

    errors = []
    for kind in dict.fromkeys(chain):
        try:
            backend = _OPENERS[kind](config)
            logger.info(f"Using secret backend: {kind}")
            return backend
        except (BackendUnavailableError, KeyringError, OSError, RuntimeError) as e:
            logger.warning(f"Secret backend '{kind}' unavailable: {e}")
            errors.append(f"{kind}: {e}")

    raise BackendUnavailableError(f"No secret backend available ({'; '.join(errors)})")


# Global secret backend instance
_secret_backend: Optional[SecretBackend] = None


def get_secret_backend(override: Optional[str] = None) -> SecretBackend:
    """Get the process-wide secret backend, resolving it on first use."""
    global _secret_backend

    if _secret_backend is None:
        _secret_backend = resolve_secret_backend(override)
        logger.info(f"Initialized secret backend: {type(_secret_backend).__name__}")

    return _secret_backend


def set_secret_backend(backend: Optional[SecretBackend]) -> None:
    """Set (or clear, with None) the process-wide secret backend."""
    global _secret_backend
    _secret_backend = backend
    if backend is not None:
        logger.info(f"Set secret backend: {type(backend).__name__}")
