"""
Pending authorization store for keyward.

The remote flow runs as two separate invocations. Step 1 records the issued
state, PKCE verifier, redirect URI and scopes here; step 2 consumes the entry
when it exchanges the code.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Any, Dict, List, Optional

from ..utils.constants import DEFAULT_PENDING_TTL
from ..utils.errors import StateMismatchError
from ..utils.files import atomic_write_json

logger = logging.getLogger(__name__)


class PendingAuthorizationStore:
    """
    Disk-backed map of OAuth state values to pending authorization requests.

    Entries expire after ``ttl`` seconds and are consumed on use.
    """

    def __init__(self, path: str, ttl: int = DEFAULT_PENDING_TTL) -> None:
        self._path = path
        self._ttl = ttl
        self._lock = RLock()
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._load_from_disk()

    def _cleanup_expired_locked(self) -> None:
        """Remove expired entries. Caller must hold lock."""
        now = datetime.now(timezone.utc)
        expired = [
            state
            for state, data in self._pending.items()
            if data.get("expires_at") and data["expires_at"] <= now
        ]
        for state in expired:
            del self._pending[state]
            logger.debug("Removed expired pending authorization: %s...", state[:8])

    def _load_from_disk(self) -> None:
        """Load persisted pending requests."""
        if not os.path.exists(self._path):
            logger.debug("No pending authorizations file found")
            return

        try:
            with open(self._path, "r") as f:
                persisted = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse pending authorizations file: %s", e)
            return
        except IOError as e:
            logger.warning("Failed to read pending authorizations file: %s", e)
            return

        if not isinstance(persisted, dict):
            logger.warning("Invalid pending authorizations file format, ignoring")
            return

        for state, data in persisted.items():
            try:
                data["expires_at"] = datetime.fromisoformat(data["expires_at"])
                data["created_at"] = datetime.fromisoformat(data["created_at"])
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Failed to parse pending authorization: %s", e)
                continue
            self._pending[state] = data

        self._cleanup_expired_locked()
        logger.debug("Loaded %d pending authorizations", len(self._pending))

    def _save_to_disk(self) -> None:
        """Persist pending requests atomically. Caller must hold lock."""
        serializable = {}
        for state, data in self._pending.items():
            entry = dict(data)
            entry["expires_at"] = data["expires_at"].isoformat()
            entry["created_at"] = data["created_at"].isoformat()
            serializable[state] = entry
        atomic_write_json(self._path, serializable)
        logger.debug("Persisted %d pending authorizations", len(serializable))

    def store(
        self,
        state: str,
        redirect_uri: str,
        scopes: List[str],
        code_verifier: Optional[str] = None,
        header_scheme: Optional[List[str]] = None,
    ) -> None:
        """Record a pending authorization request."""
        if not state:
            raise ValueError("OAuth state must be provided")

        with self._lock:
            self._cleanup_expired_locked()
            now = datetime.now(timezone.utc)
            self._pending[state] = {
                "redirect_uri": redirect_uri,
                "scopes": list(scopes),
                "code_verifier": code_verifier,
                "header_scheme": list(header_scheme) if header_scheme else None,
                "created_at": now,
                "expires_at": now + timedelta(seconds=self._ttl),
            }
            self._save_to_disk()
            logger.info("Stored pending authorization %s...", state[:8])

    def consume(self, state: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Remove and return a pending request.

        With ``state``, the matching entry is returned or StateMismatchError
        raised. Without it, the most recent unexpired entry is returned, or
        None if there is none.
        """
        with self._lock:
            self._cleanup_expired_locked()
            if state is not None:
                info = self._pending.pop(state, None)
                if info is None:
                    logger.error("Remote flow completion with unknown or expired state")
                    raise StateMismatchError("Unknown or expired authorization state")
            else:
                if not self._pending:
                    return None
                state = max(self._pending, key=lambda s: self._pending[s]["created_at"])
                info = self._pending.pop(state)

            self._save_to_disk()
            logger.debug("Consumed pending authorization %s...", state[:8])
            return dict(info, state=state)

    def __len__(self) -> int:
        with self._lock:
            self._cleanup_expired_locked()
            return len(self._pending)
