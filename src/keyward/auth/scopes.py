"""
Google OAuth Scopes for keyward.

This module defines the scope table mapping each logical service to the OAuth
scopes it requires, and the ScopeRegistry that answers scope queries.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from ..utils.constants import DEFAULT_HEADER_NAME, DEFAULT_HEADER_PREFIX
from ..utils.errors import UnknownServiceError

logger = logging.getLogger(__name__)

# Base OAuth scopes required for user identification
USERINFO_EMAIL_SCOPE = "https://www.googleapis.com/auth/userinfo.email"
OPENID_SCOPE = "openid"

# Gmail scopes
GMAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"
GMAIL_SETTINGS_SCOPE = "https://www.googleapis.com/auth/gmail.settings.basic"
GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"

# Calendar scopes
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
CALENDAR_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"

# Google Drive scopes
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
DRIVE_READONLY_SCOPE = "https://www.googleapis.com/auth/drive.readonly"

# Google Docs scopes
DOCS_WRITE_SCOPE = "https://www.googleapis.com/auth/documents"
DOCS_READONLY_SCOPE = "https://www.googleapis.com/auth/documents.readonly"

# Google Sheets scopes
SHEETS_WRITE_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
SHEETS_READONLY_SCOPE = "https://www.googleapis.com/auth/spreadsheets.readonly"

# People (contacts) scopes
CONTACTS_SCOPE = "https://www.googleapis.com/auth/contacts"
CONTACTS_READONLY_SCOPE = "https://www.googleapis.com/auth/contacts.readonly"

# Tasks scopes
TASKS_SCOPE = "https://www.googleapis.com/auth/tasks"
TASKS_READONLY_SCOPE = "https://www.googleapis.com/auth/tasks.readonly"

# Admin SDK directory scopes
ADMIN_USER_SCOPE = "https://www.googleapis.com/auth/admin.directory.user"
ADMIN_GROUP_SCOPE = "https://www.googleapis.com/auth/admin.directory.group"
ADMIN_USER_READONLY_SCOPE = (
    "https://www.googleapis.com/auth/admin.directory.user.readonly"
)
ADMIN_GROUP_READONLY_SCOPE = (
    "https://www.googleapis.com/auth/admin.directory.group.readonly"
)

IDENTITY_SERVICE = "identity"


@dataclass(frozen=True)
class ScopeSet:
    """Scopes declared for one service.

    ``header_name`` and ``header_prefix`` override the bearer header for
    providers that expect something else.
    """

    service: str
    scopes: Tuple[str, ...]
    read_only_scopes: Tuple[str, ...]
    header_name: Optional[str] = None
    header_prefix: Optional[str] = None

    def for_mode(self, read_only: bool) -> Tuple[str, ...]:
        return self.read_only_scopes if read_only else self.scopes


def _scope_set(service: str, scopes: Sequence[str], read_only: Sequence[str]) -> ScopeSet:
    return ScopeSet(service=service, scopes=tuple(scopes), read_only_scopes=tuple(read_only))


DEFAULT_SCOPE_TABLE: Mapping[str, ScopeSet] = MappingProxyType(
    {
        IDENTITY_SERVICE: _scope_set(
            IDENTITY_SERVICE,
            [OPENID_SCOPE, USERINFO_EMAIL_SCOPE],
            [OPENID_SCOPE, USERINFO_EMAIL_SCOPE],
        ),
        "mail": _scope_set(
            "mail",
            [GMAIL_MODIFY_SCOPE, GMAIL_SEND_SCOPE, GMAIL_SETTINGS_SCOPE],
            [GMAIL_READONLY_SCOPE],
        ),
        "calendar": _scope_set("calendar", [CALENDAR_SCOPE], [CALENDAR_READONLY_SCOPE]),
        "drive": _scope_set("drive", [DRIVE_SCOPE], [DRIVE_READONLY_SCOPE]),
        "docs": _scope_set(
            "docs", [DOCS_WRITE_SCOPE, DRIVE_SCOPE], [DOCS_READONLY_SCOPE, DRIVE_READONLY_SCOPE]
        ),
        "sheets": _scope_set(
            "sheets",
            [SHEETS_WRITE_SCOPE, DRIVE_SCOPE],
            [SHEETS_READONLY_SCOPE, DRIVE_READONLY_SCOPE],
        ),
        "contacts": _scope_set("contacts", [CONTACTS_SCOPE], [CONTACTS_READONLY_SCOPE]),
        "tasks": _scope_set("tasks", [TASKS_SCOPE], [TASKS_READONLY_SCOPE]),
        "admin": _scope_set(
            "admin",
            [ADMIN_USER_SCOPE, ADMIN_GROUP_SCOPE],
            [ADMIN_USER_READONLY_SCOPE, ADMIN_GROUP_READONLY_SCOPE],
        ),
    }
)


class ScopeRegistry:
    """
    Immutable lookup of the scopes each service needs.

    The table is copied on construction, so later changes to the mapping
    passed in have no effect.
    """

    def __init__(self, table: Optional[Mapping[str, ScopeSet]] = None) -> None:
        source = DEFAULT_SCOPE_TABLE if table is None else table
        self._table: Mapping[str, ScopeSet] = MappingProxyType(dict(source))

    def services(self) -> List[str]:
        """Get the registered service identifiers."""
        return list(self._table)

    def get(self, service: str) -> ScopeSet:
        """Get the ScopeSet for a service, raising UnknownServiceError if absent."""
        try:
            return self._table[service]
        except KeyError:
            raise UnknownServiceError(service, self.services()) from None

    def scopes_for(self, services: Iterable[str], read_only: bool = False) -> Tuple[str, ...]:
        """
        Get the scopes for a list of services.

        Args:
            services: Service identifiers, e.g. ["mail", "admin"].
            read_only: Restrict to the read-only scopes of each service.

        Returns:
            Deduplicated scopes in first-seen order.

        Raises:
            UnknownServiceError: If a service has no registry entry.
        """
        ordered = {}
        for service in services:
            for scope in self.get(service).for_mode(read_only):
                ordered.setdefault(scope, None)
        return tuple(ordered)

    def header_scheme_for(self, services: Iterable[str]) -> Tuple[str, str]:
        """Return the (header name, prefix) of the first service that overrides it."""
        for service in services:
            scope_set = self.get(service)
            if scope_set.header_name or scope_set.header_prefix is not None:
                name = scope_set.header_name or DEFAULT_HEADER_NAME
                prefix = (
                    DEFAULT_HEADER_PREFIX
                    if scope_set.header_prefix is None
                    else scope_set.header_prefix
                )
                return name, prefix
        return DEFAULT_HEADER_NAME, DEFAULT_HEADER_PREFIX

    def missing_scopes(
        self, granted: Iterable[str], services: Iterable[str], read_only: bool = False
    ) -> Tuple[str, ...]:
        """
        Get the requested scopes not covered by a granted scope set.

        A service is covered when every scope of the requested variant was
        granted, or every one of its full scopes was granted.
        """
        granted_set = set(granted)
        missing = {}
        for service in services:
            scope_set = self.get(service)
            wanted = scope_set.for_mode(read_only)
            if granted_set.issuperset(wanted) or granted_set.issuperset(scope_set.scopes):
                continue
            for scope in wanted:
                if scope not in granted_set:
                    missing.setdefault(scope, None)
        return tuple(missing)

    def covers(
        self, granted: Iterable[str], services: Iterable[str], read_only: bool = False
    ) -> bool:
        """Check whether granted scopes satisfy the requested services."""
        return not self.missing_scopes(granted, services, read_only)


_default_registry: Optional[ScopeRegistry] = None


def get_scope_registry() -> ScopeRegistry:
    """Get the registry built from the default scope table."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ScopeRegistry(DEFAULT_SCOPE_TABLE)
        logger.debug(f"Initialized scope registry: {len(DEFAULT_SCOPE_TABLE)} services")
    return _default_registry
