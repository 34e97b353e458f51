"""Unit tests for PersistingTokenSource and the refresh locks."""
import logging
import multiprocessing
import os
import shutil
import sys
import tempfile
import threading
from datetime import timedelta

import pytest
from google.auth.exceptions import TransportError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../src"))

from fakes import (  # noqa: E402
    FakeResponse,
    FileRotatingProvider,
    InMemorySecretBackend,
    RotatingProvider,
    StubTokenEndpoint,
    make_token_client,
)
from keyward.auth.credential_store import EncryptedFileSecretBackend  # noqa: E402
from keyward.auth.locking import AccountLock  # noqa: E402
from keyward.auth.models import Credential, utcnow  # noqa: E402
from keyward.auth.token_source import PersistingTokenSource  # noqa: E402
from keyward.utils.errors import (  # noqa: E402
    AuthRequiredError,
    RefreshLockTimeoutError,
)

ACCOUNT = "user@example.com"


def stale_credential(access_token="A0", refresh_token="R0"):
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=utcnow() - timedelta(hours=1),
        scopes=("openid",),
    )


def fresh_credential(access_token="A0", refresh_token="R0"):
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=utcnow() + timedelta(hours=1),
        scopes=("openid",),
    )


class TokenSourceTestCase:
    """Shared fixtures: temp lock directory and in-memory backend."""

    def setup_method(self):
        self.lock_dir = tempfile.mkdtemp()
        self.backend = InMemorySecretBackend()

    def teardown_method(self):
        if os.path.exists(self.lock_dir):
            shutil.rmtree(self.lock_dir)

    def make_source(self, request, **kwargs):
        kwargs.setdefault("lock_timeout", 1.0)
        return PersistingTokenSource(
            ACCOUNT, self.backend, make_token_client(request), self.lock_dir, **kwargs
        )


class TestCurrentToken(TokenSourceTestCase):
    """Tests for the refresh-and-persist sequence."""

    def test_fresh_credential_needs_no_network(self):
        """Test that a fresh token is returned without calling the endpoint."""
        self.backend.set(ACCOUNT, fresh_credential())
        endpoint = StubTokenEndpoint(FakeResponse(200, {"access_token": "unused"}))

        credential = self.make_source(endpoint).current_token()

        assert credential.access_token == "A0"
        assert endpoint.calls == []

    def test_expired_credential_is_refreshed_and_persisted(self):
        self.backend.set(ACCOUNT, stale_credential())
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"access_token": "A1", "expires_in": 3600})
        )
        source = self.make_source(endpoint)

        credential = source.current_token()

        assert credential.access_token == "A1"
        assert credential.refresh_token == "R0"
        assert self.backend.get(ACCOUNT) == credential
        assert source.last_refresh is not None
        assert len(endpoint.calls) == 1

    def test_refresh_margin_counts_as_stale(self):
        self.backend.set(ACCOUNT, fresh_credential())
        endpoint = StubTokenEndpoint(
            FakeResponse(200, {"access_token": "A1", "expires_in": 3600})
        )

        credential = self.make_source(endpoint, refresh_margin=7200).current_token()

        assert credential.access_token == "A1"

    def test_rotated_refresh_token_is_persisted(self):
        self.backend.set(ACCOUNT, stale_credential())
        provider = RotatingProvider(delay=0)

        self.make_source(provider).current_token()

        assert self.backend.get(ACCOUNT).refresh_token == "R1"

    def test_no_stored_credential(self):
        endpoint = StubTokenEndpoint(FakeResponse(200, {}))

        with pytest.raises(AuthRequiredError):
            self.make_source(endpoint).current_token()

    def test_missing_refresh_token_requires_login(self):
        self.backend.set(ACCOUNT, stale_credential(refresh_token=None))
        endpoint = StubTokenEndpoint(FakeResponse(200, {}))

        with pytest.raises(AuthRequiredError):
            self.make_source(endpoint).current_token()
        assert endpoint.calls == []

    def test_rejected_refresh_token_clears_credential(self):
        """Test that invalid_grant deletes the stored credential."""
        self.backend.set(ACCOUNT, stale_credential())
        endpoint = StubTokenEndpoint(FakeResponse(400, {"error": "invalid_grant"}))
        source = self.make_source(endpoint)

        with pytest.raises(AuthRequiredError):
            source.current_token()

        assert self.backend.get(ACCOUNT) is None
        with pytest.raises(AuthRequiredError):
            source.current_token()
        assert len(endpoint.calls) == 1

    def test_persistence_failure_is_not_fatal(self, caplog):
        self.backend.set(ACCOUNT, stale_credential())
        self.backend.fail_writes = True
        provider = RotatingProvider(delay=0)
        source = self.make_source(provider, refresh_margin=7200)

        with caplog.at_level(logging.WARNING, logger="keyward.auth.token_source"):
            first = source.current_token()

        assert first.access_token == "A1"
        assert "Could not persist" in caplog.text
        assert self.backend.entries[ACCOUNT].refresh_token == "R0"

        # The unpersisted rotated refresh token is used for the next refresh
        second = source.current_token()
        assert second.access_token == "A2"
        assert provider.rejected == 0

    def test_transport_error_propagates(self):
        stored = stale_credential()
        self.backend.set(ACCOUNT, stored)
        endpoint = StubTokenEndpoint(TransportError("network unreachable"))

        with pytest.raises(TransportError):
            self.make_source(endpoint).current_token()

        assert self.backend.get(ACCOUNT) == stored


class TestRefreshLocking(TokenSourceTestCase):
    """Tests for inter-process and in-process refresh serialization."""

    def test_lock_timeout_with_stale_credential(self):
        """Test that a held lock and a stale store give RefreshLockTimeoutError."""
        self.backend.set(ACCOUNT, stale_credential())
        endpoint = StubTokenEndpoint(FakeResponse(200, {"access_token": "A1"}))
        other_process = AccountLock(self.lock_dir, ACCOUNT)
        assert other_process.acquire(0)

        try:
            with pytest.raises(RefreshLockTimeoutError):
                self.make_source(endpoint, lock_timeout=0.2).current_token()
        finally:
            other_process.release()

        assert endpoint.calls == []

    def test_lock_timeout_uses_credential_refreshed_elsewhere(self):
        self.backend.set(ACCOUNT, stale_credential())
        endpoint = StubTokenEndpoint(FakeResponse(200, {"access_token": "unused"}))
        source = self.make_source(endpoint, lock_timeout=0.2)
        source._credential = self.backend.get(ACCOUNT)
        other_process = AccountLock(self.lock_dir, ACCOUNT)
        assert other_process.acquire(0)

        try:
            self.backend.set(ACCOUNT, fresh_credential("A9", "R9"))
            credential = source.current_token()
        finally:
            other_process.release()

        assert credential.access_token == "A9"
        assert endpoint.calls == []

    def test_lock_is_exclusive_between_handles(self):
        first = AccountLock(self.lock_dir, ACCOUNT)
        second = AccountLock(self.lock_dir, ACCOUNT)

        assert first.acquire(0)
        assert not second.acquire(0.1)
        first.release()
        assert second.acquire(0)
        second.release()
        assert not second.held

    def test_concurrent_refreshes_hit_the_provider_once(self):
        """Eight racing callers must share a single refresh of a rotating token."""
        self.backend.set(ACCOUNT, stale_credential())
        provider = RotatingProvider(delay=0.05)
        barrier = threading.Barrier(8)
        results = []
        errors = []

        def worker():
            source = self.make_source(provider, lock_timeout=5.0)
            barrier.wait()
            try:
                results.append(source.current_token())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert len(results) == 8
        assert provider.refresh_count == 1
        assert provider.rejected == 0
        assert all(provider.accepts(c.access_token) for c in results)
        assert self.backend.get(ACCOUNT).refresh_token == provider.current_refresh_token


PASSPHRASE = "test-passphrase"
PROCESSES = 6


def refresh_in_child(provider, secrets_dir, lock_dir, barrier, results):
    backend = EncryptedFileSecretBackend(secrets_dir, passphrase=PASSPHRASE, iterations=1000)
    source = PersistingTokenSource(
        ACCOUNT, backend, make_token_client(provider), lock_dir, lock_timeout=10.0
    )
    barrier.wait()
    try:
        results.put(source.current_token().access_token)
    except Exception as e:
        results.put(f"error: {e!r}")


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="needs fork"
)
class TestRefreshAcrossProcesses(TokenSourceTestCase):
    """Separate processes sharing the encrypted file store and the lock files."""

    def test_processes_share_a_single_refresh(self):
        secrets_dir = os.path.join(self.lock_dir, "secrets")
        backend = EncryptedFileSecretBackend(secrets_dir, passphrase=PASSPHRASE, iterations=1000)
        backend.set(ACCOUNT, stale_credential())
        provider = FileRotatingProvider(os.path.join(self.lock_dir, "provider.json"))

        context = multiprocessing.get_context("fork")
        barrier = context.Barrier(PROCESSES)
        results = context.Queue()
        processes = [
            context.Process(
                target=refresh_in_child,
                args=(provider, secrets_dir, self.lock_dir, barrier, results),
            )
            for _ in range(PROCESSES)
        ]
        for process in processes:
            process.start()
        tokens = [results.get(timeout=60) for _ in processes]
        for process in processes:
            process.join(timeout=30)

        state = provider.state()
        assert tokens == ["A1"] * PROCESSES
        assert state["refreshes"] == 1
        assert state["rejected"] == 0
        assert backend.get(ACCOUNT).refresh_token == state["refresh_token"] == "R1"
        assert all(process.exitcode == 0 for process in processes)
