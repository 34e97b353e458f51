"""Unit tests for OAuthTokenClient."""
import base64
import os
import sys

import pytest
from google.auth.exceptions import TransportError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../src"))

from fakes import FakeResponse, StubTokenEndpoint, make_token_client  # noqa: E402
from keyward.auth.models import Credential  # noqa: E402
from keyward.auth.scopes import DRIVE_READONLY_SCOPE, DRIVE_SCOPE, OPENID_SCOPE  # noqa: E402
from keyward.auth.token_client import restrict_scopes  # noqa: E402
from keyward.utils.errors import (  # noqa: E402
    EmptyTokenError,
    InvalidGrantError,
    OAuthProviderError,
    ScopeMismatchError,
)


class TestExchangeCode:
    """Tests for the authorization-code grant."""

    def test_successful_exchange(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(
                200,
                {
                    "access_token": "T1",
                    "refresh_token": "R1",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                    "scope": f"{OPENID_SCOPE} {DRIVE_SCOPE}",
                },
            )
        )
        client = make_token_client(endpoint)

        credential = client.exchange_code(
            "abc",
            "http://127.0.0.1:8080/cb",
            code_verifier="v" * 43,
            requested_scopes=[OPENID_SCOPE, DRIVE_SCOPE],
        )

        assert credential.access_token == "T1"
        assert credential.refresh_token == "R1"
        assert credential.scopes == (OPENID_SCOPE, DRIVE_SCOPE)
        assert credential.is_fresh(60)
        assert endpoint.calls == [
            {
                "grant_type": "authorization_code",
                "code": "abc",
                "redirect_uri": "http://127.0.0.1:8080/cb",
                "code_verifier": "v" * 43,
            }
        ]
        expected_auth = base64.b64encode(b"test-client:test-secret").decode()
        assert endpoint.headers[0]["Authorization"] == f"Basic {expected_auth}"

    def test_missing_scope_falls_back_to_requested(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"access_token": "T1", "refresh_token": "R1"})
        )
        client = make_token_client(endpoint)

        credential = client.exchange_code("abc", "http://x", requested_scopes=["a", "b"])

        assert credential.scopes == ("a", "b")
        assert credential.expiry is None

    def test_scopes_beyond_the_request_are_not_recorded(self):
        """Test that earlier grants returned by the provider never widen a read-only login."""
        endpoint = StubTokenEndpoint(
            FakeResponse(
                200,
                {
                    "access_token": "T1",
                    "refresh_token": "R1",
                    "scope": f"{DRIVE_READONLY_SCOPE} {DRIVE_SCOPE}",
                },
            )
        )

        credential = make_token_client(endpoint).exchange_code(
            "abc", "http://x", requested_scopes=[DRIVE_READONLY_SCOPE]
        )

        assert credential.scopes == (DRIVE_READONLY_SCOPE,)

    def test_error_in_success_body(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"error": "invalid_client", "error_description": "bad id"})
        )
        client = make_token_client(endpoint)

        with pytest.raises(OAuthProviderError) as exc_info:
            client.exchange_code("abc", "http://x")

        assert exc_info.value.error == "invalid_client"
        assert exc_info.value.description == "bad id"

    def test_unknown_provider_error(self):
        endpoint = StubTokenEndpoint(FakeResponse(400, {"error": "org_policy_violation"}))

        with pytest.raises(OAuthProviderError) as exc_info:
            make_token_client(endpoint).exchange_code("abc", "http://x")

        assert exc_info.value.error == "org_policy_violation"

    def test_invalid_grant(self):
        endpoint = StubTokenEndpoint(FakeResponse(400, {"error": "invalid_grant"}))

        with pytest.raises(InvalidGrantError):
            make_token_client(endpoint).exchange_code("used-code", "http://x")

    def test_missing_refresh_token(self):
        endpoint = StubTokenEndpoint(FakeResponse(200, {"access_token": "T1"}))

        with pytest.raises(EmptyTokenError):
            make_token_client(endpoint).exchange_code("abc", "http://x")

    def test_missing_access_token(self):
        endpoint = StubTokenEndpoint(FakeResponse(200, {"refresh_token": "R1"}))

        with pytest.raises(EmptyTokenError):
            make_token_client(endpoint).exchange_code("abc", "http://x")

    def test_empty_access_token(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"access_token": "", "refresh_token": "R1"})
        )

        with pytest.raises(EmptyTokenError):
            make_token_client(endpoint).exchange_code("abc", "http://x")

    def test_non_json_error_page(self):
        endpoint = StubTokenEndpoint(FakeResponse(502, b"<html>Bad Gateway</html>"))

        with pytest.raises(OAuthProviderError) as exc_info:
            make_token_client(endpoint).exchange_code("abc", "http://x")

        assert exc_info.value.error == "http_502"

    def test_transport_error(self):
        endpoint = StubTokenEndpoint(TransportError("connection reset"))

        with pytest.raises(TransportError):
            make_token_client(endpoint).exchange_code("abc", "http://x")


class TestRestrictScopes:
    """Tests for limiting recorded scopes to the requested ones."""

    def test_no_scope_in_response(self):
        assert restrict_scopes(["a", "b"], None) == ("a", "b")

    def test_keeps_request_order(self):
        assert restrict_scopes(["b", "a"], "a b c") == ("b", "a")

    def test_narrower_grant(self):
        assert restrict_scopes(["a", "b"], ["b"]) == ("b",)

    def test_nothing_requested_was_granted(self):
        with pytest.raises(ScopeMismatchError) as exc_info:
            restrict_scopes(["a"], ["c"])

        assert exc_info.value.missing == ("a",)


class TestRefresh:
    """Tests for the refresh grant."""

    def setup_method(self):
        self.credential = Credential(
            access_token="old",
            refresh_token="R1",
            expiry="2000-01-01T00:00:00+00:00",
            scopes=("s1", "s2"),
            header_name="X-Token",
            header_prefix="",
        )

    def test_refresh_keeps_refresh_token_and_scopes(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"access_token": "new", "expires_in": 3600})
        )

        refreshed = make_token_client(endpoint).refresh(self.credential)

        assert refreshed.access_token == "new"
        assert refreshed.refresh_token == "R1"
        assert refreshed.scopes == ("s1", "s2")
        assert (refreshed.header_name, refreshed.header_prefix) == ("X-Token", "")
        assert endpoint.calls[0]["grant_type"] == "refresh_token"
        assert endpoint.calls[0]["refresh_token"] == "R1"

    def test_refresh_accepts_rotation(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"access_token": "new", "refresh_token": "R2", "expires_in": 60})
        )

        assert make_token_client(endpoint).refresh(self.credential).refresh_token == "R2"

    def test_revoked_refresh_token(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(
                400, {"error": "invalid_grant", "error_description": "Token has been revoked."}
            )
        )

        with pytest.raises(InvalidGrantError):
            make_token_client(endpoint).refresh(self.credential)

    def test_nested_error_object(self):
        endpoint = StubTokenEndpoint(
            FakeResponse(401, {"error": {"status": "UNAUTHENTICATED", "message": "nope"}})
        )

        with pytest.raises(OAuthProviderError) as exc_info:
            make_token_client(endpoint).refresh(self.credential)

        assert exc_info.value.error == "UNAUTHENTICATED"

    def test_transport_error_propagates(self):
        endpoint = StubTokenEndpoint(TransportError("connection reset"))

        with pytest.raises(TransportError):
            make_token_client(endpoint).refresh(self.credential)

    def test_no_refresh_token(self):
        endpoint = StubTokenEndpoint(FakeResponse(200, {}))

        with pytest.raises(EmptyTokenError):
            make_token_client(endpoint).refresh(Credential("T"))
        assert endpoint.calls == []
