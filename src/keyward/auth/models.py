"""
Credential and account models for keyward.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..utils.constants import DEFAULT_HEADER_NAME, DEFAULT_HEADER_PREFIX

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_account(account: str) -> str:
    """Canonical form of an account identifier (trimmed, lower-cased)."""
    return account.strip().lower()


def _normalize_expiry(expiry: Optional[Any]) -> Optional[datetime]:
    """Convert expiry values to aware UTC datetimes."""
    if expiry is None or expiry == "":
        return None

    if isinstance(expiry, datetime):
        if expiry.tzinfo is None:
            return expiry.replace(tzinfo=timezone.utc)
        return expiry.astimezone(timezone.utc)

    if isinstance(expiry, str):
        try:
            parsed = datetime.fromisoformat(expiry.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Failed to parse expiry string '%s'", expiry)
            return None
        return _normalize_expiry(parsed)

    return None


@dataclass(frozen=True)
class Credential:
    """
    A token pair bound to one account.

    The refresh token is the durable secret; the access token is a cache
    that may be regenerated from it.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    scopes: Tuple[str, ...] = ()
    header_name: str = DEFAULT_HEADER_NAME
    header_prefix: str = DEFAULT_HEADER_PREFIX

    def __post_init__(self) -> None:
        object.__setattr__(self, "expiry", _normalize_expiry(self.expiry))
        object.__setattr__(self, "scopes", tuple(self.scopes or ()))

    def is_fresh(self, margin: float = 0, now: Optional[datetime] = None) -> bool:
        """Whether the access token is usable for at least ``margin`` more seconds."""
        if not self.access_token:
            return False
        if self.expiry is None:
            return True
        now = now or utcnow()
        return now < self.expiry - timedelta(seconds=margin)

    def header_value(self) -> str:
        if self.header_prefix:
            return f"{self.header_prefix} {self.access_token}"
        return self.access_token

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "scopes": list(self.scopes),
            "header_name": self.header_name,
            "header_prefix": self.header_prefix,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        header_prefix = data.get("header_prefix")
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token"),
            expiry=data.get("expiry"),
            scopes=tuple(data.get("scopes") or ()),
            header_name=data.get("header_name") or DEFAULT_HEADER_NAME,
            header_prefix=DEFAULT_HEADER_PREFIX if header_prefix is None else header_prefix,
        )


@dataclass
class AccountInfo:
    """Listing entry for one stored account."""

    account: str
    aliases: List[str] = field(default_factory=list)
    is_default: bool = False
    valid: Optional[bool] = None
    error: Optional[str] = None
    scopes: Tuple[str, ...] = ()
