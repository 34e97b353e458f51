"""
Authenticated HTTP transport for keyward.
"""

import logging

import requests
from requests.auth import AuthBase

from .token_source import PersistingTokenSource

logger = logging.getLogger(__name__)


class TokenSourceAuth(AuthBase):
    """requests auth hook that stamps every request with the current token."""

    def __init__(self, token_source: PersistingTokenSource) -> None:
        self.token_source = token_source

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        credential = self.token_source.current_token()
        request.headers[credential.header_name] = credential.header_value()
        return request


def build_authorized_session(token_source: PersistingTokenSource) -> requests.Session:
    """Create a requests Session authenticated through a token source."""
    session = requests.Session()
    session.auth = TokenSourceAuth(token_source)
    logger.debug(f"Built authorized session for {token_source.account}")
    return session
