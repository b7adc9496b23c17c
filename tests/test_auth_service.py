"""
tests/test_auth_service.py -- Unit tests for auth/service.py and
auth/directory.py.

Coverage:
  - register-then-login scenario; duplicate username (case-insensitive,
    and under concurrent registration)
  - unified InvalidCredentials for unknown user and wrong password
  - dummy-hash verification on unknown username (timing equalization)
  - input validation (empty, too long, bad characters, password bounds)
  - current_account / logout / change_password
  - registration compensation when session creation fails
  - system accounts cannot log in and reserved names cannot register
  - transparent rehash on parameter upgrade
"""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from auth.credentials import PasswordHasher
from auth.directory import IdentityDirectory, normalize_username
from auth.service import AuthService
from auth.sessions import MemorySessionStore, SessionManager
from core.database import Database
from core.errors import (
    AuthenticationRequired,
    DuplicateUsername,
    InvalidCredentials,
    InvalidInput,
    Unavailable,
)

SECRET = "s" * 40


@pytest.fixture
def db(tmp_path: Path):
    database = Database(f"sqlite:///{tmp_path / 'auth.db'}")
    yield database
    database.close()


@pytest.fixture
def directory(db: Database) -> IdentityDirectory:
    return IdentityDirectory(db)


@pytest.fixture
def sessions() -> SessionManager:
    return SessionManager(MemorySessionStore(), secret_key=SECRET)


@pytest.fixture
def auth(directory: IdentityDirectory, sessions: SessionManager, hasher: PasswordHasher) -> AuthService:
    return AuthService(directory, sessions, hasher, reserved_usernames=frozenset({"community-pool"}))


class TestScenarios:
    def test_register_then_login(self, auth: AuthService) -> None:
        account, sid = auth.register("bob", "pw")
        assert account.token_balance == 0
        assert auth.current_account(sid).username == "bob"

        logged_in, sid2 = auth.login("bob", "pw")
        assert logged_in.id == account.id
        assert sid2 != sid
        assert auth.current_account(sid2).id == account.id

    def test_duplicate_username(self, auth: AuthService) -> None:
        auth.register("bob", "pw")
        with pytest.raises(DuplicateUsername):
            auth.register("bob", "other")

    def test_duplicate_username_is_case_insensitive(self, auth: AuthService) -> None:
        auth.register("Alice", "pw")
        with pytest.raises(DuplicateUsername):
            auth.register("alice", "pw")
        with pytest.raises(DuplicateUsername):
            auth.register("  ALICE ", "pw")

    def test_concurrent_registration_of_one_name(self, auth: AuthService) -> None:
        """Ten racing registrations of one username: exactly one wins."""
        outcomes: list[str] = []
        lock = threading.Lock()
        start = threading.Barrier(10)

        def register(i: int) -> None:
            start.wait()
            try:
                auth.register("racer" if i % 2 else "RACER", "pw")
                result = "ok"
            except DuplicateUsername:
                result = "duplicate"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=register, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("duplicate") == 9

    def test_login_is_case_insensitive(self, auth: AuthService) -> None:
        account, _ = auth.register("Alice", "pw")
        logged_in, _ = auth.login("aLiCe", "pw")
        assert logged_in.id == account.id
        assert logged_in.username == "Alice"


class TestLoginFailures:
    def test_wrong_password(self, auth: AuthService) -> None:
        auth.register("bob", "pw")
        with pytest.raises(InvalidCredentials) as wrong:
            auth.login("bob", "nope")
        with pytest.raises(InvalidCredentials) as unknown:
            auth.login("nobody", "pw")
        assert wrong.value.message == unknown.value.message
        assert wrong.value.code == unknown.value.code

    def test_unknown_user_still_runs_kdf(self, auth: AuthService) -> None:
        """Unknown usernames are verified against the dummy hash, not skipped."""
        dummy = auth.hasher.dummy_hash
        with patch.object(auth.hasher, "verify", wraps=auth.hasher.verify) as spy:
            with pytest.raises(InvalidCredentials):
                auth.login("ghost", "pw")
        spy.assert_called_once_with("pw", dummy)

    @pytest.mark.parametrize("username,password", [("", "pw"), ("   ", "pw"), ("bob", "")])
    def test_empty_input(self, auth: AuthService, username: str, password: str) -> None:
        with pytest.raises(InvalidInput):
            auth.login(username, password)

    def test_system_account_cannot_log_in(self, auth: AuthService, directory: IdentityDirectory) -> None:
        directory.get_or_create_system("community-pool")
        with pytest.raises(InvalidCredentials):
            auth.login("community-pool", "anything")

    def test_new_session_per_login(self, auth: AuthService) -> None:
        auth.register("bob", "pw")
        _, a = auth.login("bob", "pw")
        _, b = auth.login("bob", "pw")
        assert a != b
        assert auth.current_account(a).username == "bob"
        assert auth.current_account(b).username == "bob"


class TestRegisterValidation:
    @pytest.mark.parametrize("username", ["", "   ", "a" * 65, "bad name", "semi;colon", "<script>"])
    def test_bad_username(self, auth: AuthService, username: str) -> None:
        with pytest.raises(InvalidInput):
            auth.register(username, "pw")

    def test_username_at_limit(self, auth: AuthService) -> None:
        account, _ = auth.register("a" * 64, "pw")
        assert account.username == "a" * 64

    def test_username_expanding_past_limit_under_normalization(self, auth: AuthService) -> None:
        """Four U+FDFA characters normalize to 72; the stored key must fit in 64."""
        with pytest.raises(InvalidInput):
            auth.register("ﷺ" * 4, "pw")

    def test_password_bounds(self, directory: IdentityDirectory, sessions: SessionManager, hasher: PasswordHasher) -> None:
        strict = AuthService(directory, sessions, hasher, min_password_length=8)
        with pytest.raises(InvalidInput):
            strict.register("bob", "short")
        with pytest.raises(InvalidInput):
            strict.register("bob", "x" * 1025)
        with pytest.raises(InvalidInput):
            strict.register("bob", "")
        account, _ = strict.register("bob", "long-enough")
        assert account.username == "bob"

    def test_reserved_username(self, auth: AuthService) -> None:
        with pytest.raises(DuplicateUsername):
            auth.register("Community-Pool", "pw")

    def test_profile_fields_stored(self, auth: AuthService) -> None:
        account, _ = auth.register("carol", "pw", {"email": "carol@example.com", "first_name": "Carol"})
        assert account.email == "carol@example.com"
        assert account.first_name == "Carol"
        assert account.is_premium is False

    def test_unknown_profile_field_rejected(self, auth: AuthService) -> None:
        with pytest.raises(InvalidInput):
            auth.register("carol", "pw", {"token_balance": 1_000_000})


class TestRegistrationCompensation:
    def test_session_failure_removes_account(
        self, directory: IdentityDirectory, hasher: PasswordHasher
    ) -> None:
        broken = MagicMock(spec=SessionManager)
        broken.create.side_effect = Unavailable()
        auth = AuthService(directory, broken, hasher)
        with pytest.raises(Unavailable):
            auth.register("dave", "pw")
        assert directory.find_by_username("dave") is None

    def test_retry_after_failure_succeeds(
        self, directory: IdentityDirectory, sessions: SessionManager, hasher: PasswordHasher
    ) -> None:
        broken = MagicMock(spec=SessionManager)
        broken.create.side_effect = RuntimeError("store exploded")
        with pytest.raises(Unavailable):
            AuthService(directory, broken, hasher).register("dave", "pw")
        account, sid = AuthService(directory, sessions, hasher).register("dave", "pw")
        assert sessions.resolve(sid) == account.id


class TestCurrentAccount:
    def test_missing_session(self, auth: AuthService) -> None:
        with pytest.raises(AuthenticationRequired):
            auth.current_account(None)
        with pytest.raises(AuthenticationRequired):
            auth.current_account("not-a-real-session-identifier")

    def test_logout(self, auth: AuthService) -> None:
        _, sid = auth.register("bob", "pw")
        auth.logout(sid)
        with pytest.raises(AuthenticationRequired):
            auth.current_account(sid)
        auth.logout(sid)
        auth.logout(None)


class TestChangePassword:
    def test_change_password_rotates_sessions(self, auth: AuthService) -> None:
        _, first = auth.register("bob", "old-pw")
        _, second = auth.login("bob", "old-pw")
        fresh = auth.change_password(first, "old-pw", "new-pw")

        for sid in (first, second):
            with pytest.raises(AuthenticationRequired):
                auth.current_account(sid)
        assert auth.current_account(fresh).username == "bob"
        with pytest.raises(InvalidCredentials):
            auth.login("bob", "old-pw")
        auth.login("bob", "new-pw")

    def test_wrong_current_password(self, auth: AuthService) -> None:
        _, sid = auth.register("bob", "old-pw")
        with pytest.raises(InvalidCredentials):
            auth.change_password(sid, "guess", "new-pw")
        assert auth.current_account(sid).username == "bob"


class TestRehash:
    def test_login_upgrades_hash(self, directory: IdentityDirectory, sessions: SessionManager, hasher: PasswordHasher) -> None:
        AuthService(directory, sessions, hasher).register("erin", "pw")
        stronger = PasswordHasher(time_cost=2, memory_cost=8, parallelism=1)
        AuthService(directory, sessions, stronger).login("erin", "pw")
        stored = directory.find_by_username("erin").password_hash
        assert stored.split("$")[2] == "t=2,m=8,p=1"
        assert stronger.verify("pw", stored)


class TestDirectory:
    def test_normalize_username(self) -> None:
        assert normalize_username("  Alice ") == "alice"
        assert normalize_username("ＡＬＩＣＥ") == "alice"

    def test_remove_unfunded_refuses_funded_accounts(self, directory: IdentityDirectory, db: Database) -> None:
        from ledger.service import Ledger

        account = directory.create("frank", "hash")
        Ledger(db).credit(account.id, 5, "admin_grant")
        assert directory.remove_unfunded(account.id) is False
        assert directory.get(account.id) is not None

    def test_get_or_create_system_is_idempotent(self, directory: IdentityDirectory) -> None:
        a = directory.get_or_create_system("community-pool")
        b = directory.get_or_create_system("community-pool")
        assert a.id == b.id
        assert a.is_system and a.password_hash is None

    def test_get_or_create_system_refuses_regular_account(self, directory: IdentityDirectory) -> None:
        directory.create("community-pool", "hash")
        with pytest.raises(RuntimeError):
            directory.get_or_create_system("community-pool")

    def test_update_profile(self, directory: IdentityDirectory) -> None:
        account = directory.create("gina", "hash")
        assert directory.update_profile(account.id, is_premium=True, last_name="G") is True
        updated = directory.get(account.id)
        assert updated.is_premium is True
        assert updated.last_name == "G"
        with pytest.raises(InvalidInput):
            directory.update_profile(account.id, token_balance=10)
