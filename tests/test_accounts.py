"""Unit tests for AccountStore and AccountResolver."""
import itertools
import multiprocessing
import os
import shutil
import sys
import tempfile
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../src"))

from fakes import InMemorySecretBackend  # noqa: E402
from keyward.auth.accounts import AccountResolver, AccountStore  # noqa: E402
from keyward.auth.locking import AccountLock  # noqa: E402
from keyward.auth.models import Credential  # noqa: E402
from keyward.utils.errors import (  # noqa: E402
    AuthRequiredError,
    InvalidAliasError,
    SecretStorageError,
)

FLAG = "flag@example.com"
ENV = "env@example.com"
DEFAULT = "default@example.com"
SOLE = "sole@example.com"


class AccountTestCase:
    """Shared fixtures: temp account file and in-memory backend."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = AccountStore(os.path.join(self.temp_dir, "accounts.json"))
        self.backend = InMemorySecretBackend()
        self.resolver = AccountResolver(self.backend, self.store)

    def teardown_method(self):
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)


class TestResolverPriority(AccountTestCase):
    """Every combination of flag, environment, default and stored accounts."""

    @pytest.mark.parametrize(
        "has_flag,has_env,has_default,stored_count",
        list(itertools.product([False, True], [False, True], [False, True], [0, 1, 2])),
    )
    def test_resolution_order(self, has_flag, has_env, has_default, stored_count):
        for account in [SOLE, "other@example.com"][:stored_count]:
            self.backend.set(account, Credential("T", "R"))

        kwargs = {
            "explicit": FLAG if has_flag else None,
            "env_override": ENV if has_env else None,
            "configured_default": DEFAULT if has_default else None,
        }

        if has_flag:
            expected = FLAG
        elif has_env:
            expected = ENV
        elif has_default:
            expected = DEFAULT
        elif stored_count == 1:
            expected = SOLE
        else:
            expected = None

        if expected is None:
            with pytest.raises(AuthRequiredError):
                self.resolver.resolve(**kwargs)
        else:
            assert self.resolver.resolve(**kwargs) == expected

    def test_blank_values_are_skipped(self):
        assert self.resolver.resolve(explicit="  ", env_override=ENV) == ENV

    def test_aliases_expand_at_every_step(self):
        self.store.set_alias("work", "Work@Example.com")

        assert self.resolver.resolve(explicit="work") == "work@example.com"
        assert self.resolver.resolve(env_override="WORK") == "work@example.com"
        assert self.resolver.resolve(configured_default="work") == "work@example.com"

    def test_resolve_from_environment(self):
        self.store.set_default(DEFAULT)

        with patch.dict(os.environ, {"KEYWARD_ACCOUNT": ENV}):
            assert self.resolver.resolve_from_environment() == ENV
            assert self.resolver.resolve_from_environment(FLAG) == FLAG

        with patch.dict(os.environ, {}, clear=True):
            assert self.resolver.resolve_from_environment() == DEFAULT


class TestAccountStore(AccountTestCase):
    """Tests for alias and default-account persistence."""

    def test_alias_round_trip_across_instances(self):
        self.store.set_alias("Work", "me@corp.example.com")
        reopened = AccountStore(os.path.join(self.temp_dir, "accounts.json"))

        assert reopened.get_alias("work") == "me@corp.example.com"
        assert reopened.aliases_for("ME@corp.example.com") == ["work"]

    def test_redefining_alias_leaves_credentials_alone(self):
        """Test that moving an alias never touches stored credentials."""
        self.backend.set("a@example.com", Credential("TA", "RA"))
        self.backend.set("b@example.com", Credential("TB", "RB"))
        self.store.set_alias("work", "a@example.com")

        self.store.set_alias("work", "b@example.com")

        assert self.store.expand("work") == "b@example.com"
        assert self.backend.get("a@example.com").access_token == "TA"
        assert self.backend.get("b@example.com").access_token == "TB"

    @pytest.mark.parametrize("alias", ["", "   ", "me@example.com", "my work"])
    def test_invalid_alias(self, alias):
        with pytest.raises(InvalidAliasError):
            self.store.set_alias(alias, "a@example.com")

    def test_remove_alias(self):
        self.store.set_alias("work", "a@example.com")

        assert self.store.remove_alias("work")
        assert not self.store.remove_alias("work")
        assert self.store.expand("work") == "work"

    def test_default_account(self):
        assert self.store.get_default() is None

        self.store.set_alias("work", "a@example.com")
        self.store.set_default("work")
        assert self.store.get_default() == "a@example.com"

        self.store.set_default(None)
        assert self.store.get_default() is None

    def test_corrupt_file_is_ignored(self):
        """Test that an unreadable account file is treated as empty."""
        with open(os.path.join(self.temp_dir, "accounts.json"), "w") as f:
            f.write("{not json")

        assert self.store.aliases() == {}
        self.store.set_alias("work", "a@example.com")
        assert self.store.get_alias("work") == "a@example.com"


def write_aliases(path, worker, count):
    store = AccountStore(path)
    for n in range(count):
        store.set_alias(f"w{worker}-{n}", f"user{worker}-{n}@example.com")


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="needs fork"
)
class TestAccountStoreAcrossProcesses(AccountTestCase):
    """Concurrent invocations updating the same account file."""

    def test_no_alias_update_is_lost(self):
        path = os.path.join(self.temp_dir, "accounts.json")
        context = multiprocessing.get_context("fork")
        processes = [
            context.Process(target=write_aliases, args=(path, worker, 10)) for worker in range(4)
        ]
        for process in processes:
            process.start()
        for process in processes:
            process.join(timeout=60)

        aliases = self.store.aliases()
        assert all(process.exitcode == 0 for process in processes)
        assert len(aliases) == 40
        assert aliases["w3-9"] == "user3-9@example.com"
        assert os.path.isdir(os.path.join(self.temp_dir, "locks"))

    def test_lock_held_elsewhere_blocks_writes(self):
        other = AccountLock(os.path.join(self.temp_dir, "locks"), "@accounts")
        assert other.acquire(0)
        store = AccountStore(os.path.join(self.temp_dir, "accounts.json"), lock_timeout=0.1)
        try:
            with pytest.raises(SecretStorageError):
                store.set_alias("work", "a@example.com")
        finally:
            other.release()

        store.set_alias("work", "a@example.com")
        assert store.get_alias("work") == "a@example.com"
