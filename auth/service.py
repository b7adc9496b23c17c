"""
auth/service.py -- Registration, login, logout and the current-account gate.

AuthService is the only entry point external callers use for identity. It
orchestrates the Credential Store (auth/credentials.py), the Identity
Directory (auth/directory.py) and the Session Manager (auth/sessions.py).

Security:
  Unified failure: an unknown username and a wrong password both raise
      InvalidCredentials with the same message.

  Timing equalization: when the username is unknown, the password is still
      verified against the hasher's dummy hash, so both failure paths pay
      one full Argon2id derivation. Do NOT return before verifying.

  Registration rollback: the account row and the session live in different
      stores, so they cannot share one transaction. If the session cannot be
      created, the freshly inserted account (zero balance, no ledger history)
      is removed again and Unavailable is raised. Retrying with the same
      username then succeeds instead of hitting DuplicateUsername.

  Password bounds: a minimum length, and a 1024-char ceiling so a single
      request cannot make the KDF chew on megabytes of input.

Logs carry usernames and account ids, never passwords or full session ids.

Layer rule: no imports from api/, ledger/ or collectibles/.
"""

from __future__ import annotations

import logging
import re

from auth.credentials import PasswordHasher
from auth.directory import IdentityDirectory, normalize_username
from auth.models import Account
from auth.sessions import SessionManager, redact
from core.errors import (
    AuthenticationRequired,
    DuplicateUsername,
    InvalidCredentials,
    InvalidInput,
    Unavailable,
)

logger = logging.getLogger("moodledger.auth")

MAX_USERNAME_LENGTH = 64
MAX_PASSWORD_LENGTH = 1024
_USERNAME_RE = re.compile(r"[\w.@+-]+")


class AuthService:
    """Orchestrates credential checks, account creation and sessions.

    Usage:
        auth = AuthService(directory, sessions, hasher)
        account, sid = auth.register("alice", "pw123456")
        auth.current_account(sid).username    # "alice"
        auth.logout(sid)
    """

    def __init__(
        self,
        directory: IdentityDirectory,
        sessions: SessionManager,
        hasher: PasswordHasher,
        min_password_length: int = 1,
        reserved_usernames: frozenset[str] = frozenset(),
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.hasher = hasher
        self.min_password_length = min_password_length
        self.reserved_usernames = frozenset(normalize_username(u) for u in reserved_usernames)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def register(self, username: str, password: str, profile: dict | None = None) -> tuple[Account, str]:
        """Create an account (balance 0), log it in, return (account, session_id)."""
        display = self._validate_username(username)
        self._validate_password(password)
        if self.directory.find_by_username(display) is not None:
            raise DuplicateUsername()

        # The UNIQUE constraint still decides races between concurrent registrations.
        account = self.directory.create(display, self.hasher.hash(password), profile)
        try:
            session_id = self.sessions.create(account.id)
        except Exception as exc:
            logger.error("Session creation failed for new account %d; rolling back", account.id)
            self.directory.remove_unfunded(account.id)
            if isinstance(exc, Unavailable):
                raise
            raise Unavailable() from exc
        logger.info("Registered %s (account %d)", account.username, account.id)
        return account, session_id

    def login(self, username: str, password: str) -> tuple[Account, str]:
        """Verify credentials and start a new session. Returns (account, session_id)."""
        if not isinstance(username, str) or not username.strip():
            raise InvalidInput("Username is required.")
        if not isinstance(password, str) or not password:
            raise InvalidInput("Password is required.")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise InvalidCredentials()

        account = self.directory.find_by_username(username)
        if account is None or account.password_hash is None:
            # Equalize timing -- do NOT return early before running the KDF.
            self.hasher.verify(password, self.hasher.dummy_hash)
            logger.info("Failed login for %s", username.strip()[:MAX_USERNAME_LENGTH])
            raise InvalidCredentials()
        if not self.hasher.verify(password, account.password_hash):
            logger.info("Failed login for %s", account.username)
            raise InvalidCredentials()

        if self.hasher.needs_rehash(account.password_hash):
            new_hash = self.hasher.hash(password)
            self.directory.update_password_hash(account.id, new_hash)
            account.password_hash = new_hash
            logger.info("Upgraded password hash parameters for account %d", account.id)

        session_id = self.sessions.create(account.id)
        logger.info("Login %s (account %d)", account.username, account.id)
        return account, session_id

    def logout(self, session_id: object) -> None:
        """End the session. Always succeeds from the caller's point of view."""
        self.sessions.revoke(session_id)

    def current_account(self, session_id: object) -> Account:
        """Resolve a session id to its Account or raise AuthenticationRequired."""
        account_id = self.sessions.resolve(session_id)
        if account_id is None:
            raise AuthenticationRequired()
        account = self.directory.get(account_id)
        if account is None:
            # Account removed out of band; the session is dead weight.
            self.sessions.revoke(session_id)
            raise AuthenticationRequired()
        self.sessions.touch(session_id)
        return account

    def change_password(self, session_id: object, current_password: str, new_password: str) -> str:
        """Replace the password, end every session, and return a fresh session id."""
        account = self.current_account(session_id)
        if (
            not isinstance(current_password, str)
            or account.password_hash is None
            or not self.hasher.verify(current_password, account.password_hash)
        ):
            raise InvalidCredentials()
        self._validate_password(new_password)
        self.directory.update_password_hash(account.id, self.hasher.hash(new_password))
        self.sessions.revoke_all(account.id)
        fresh = self.sessions.create(account.id)
        logger.info("Password changed for account %d (old session %s)", account.id, redact(session_id))
        return fresh

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_username(self, username: object) -> str:
        if not isinstance(username, str) or not username.strip():
            raise InvalidInput("Username is required.")
        display = username.strip()
        if len(display) > MAX_USERNAME_LENGTH:
            raise InvalidInput(f"Username must be at most {MAX_USERNAME_LENGTH} characters.")
        if not _USERNAME_RE.fullmatch(display):
            raise InvalidInput("Username may only contain letters, digits and . @ + - _")
        key = normalize_username(display)
        # NFKC can expand a single character (U+FDFA becomes 18); the key column holds 64.
        if len(key) > MAX_USERNAME_LENGTH:
            raise InvalidInput(f"Username must be at most {MAX_USERNAME_LENGTH} characters.")
        if key in self.reserved_usernames:
            raise DuplicateUsername()
        return display

    def _validate_password(self, password: object) -> None:
        if not isinstance(password, str) or not password:
            raise InvalidInput("Password is required.")
        if len(password) < self.min_password_length:
            raise InvalidInput(f"Password must be at least {self.min_password_length} characters.")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at most {MAX_PASSWORD_LENGTH} characters.")
        try:
            password.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise InvalidInput("Password contains invalid characters.") from exc
