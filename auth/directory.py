"""
auth/directory.py -- Account lookup and creation (Identity Directory).

Pattern: Repository + Data Mapper over the accounts table.
IdentityDirectory is the repository; _row_to_account is the mapper.
Route and service code never touches SQL directly.

Username policy:
  Usernames are stored as typed (display form) plus a normalized key
  (strip, NFKC, casefold). The UNIQUE constraint sits on the key, which
  makes "Alice", "alice" and "ＡＬＩＣＥ" one identity. The check-then-insert
  race between two concurrent registrations is closed by that constraint:
  the loser's INSERT fails with IntegrityError, surfaced as
  DuplicateUsername. There is no separate "does it exist?" query to race.

token_balance is read here but never written -- see ledger/service.py.

Layer rule: no imports from api/, ledger/ or collectibles/.
"""

from __future__ import annotations

import logging
import unicodedata

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from auth.models import Account
from core.database import Database, accounts, ledger_entries, now_iso
from core.errors import DuplicateUsername, InvalidInput

logger = logging.getLogger("moodledger.auth.directory")

PROFILE_FIELDS = frozenset({"email", "first_name", "last_name"})
_UPDATABLE_FIELDS = PROFILE_FIELDS | {"is_premium"}


def normalize_username(username: str) -> str:
    """Return the comparison key for a username."""
    return unicodedata.normalize("NFKC", username.strip()).casefold()


class IdentityDirectory:
    """Repository for Account records.

    Usage:
        directory = IdentityDirectory(db)
        account = directory.create("alice", hasher.hash("s3cret-pass"))
        directory.find_by_username("ALICE").id == account.id   # True
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_username(self, username: str) -> Account | None:
        """Look up an account by normalized username. None if not found."""
        key = normalize_username(username)
        with self.db.transaction() as conn:
            row = conn.execute(select(accounts).where(accounts.c.username_key == key)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get(self, account_id: int) -> Account | None:
        """Look up an account by primary key. None if not found."""
        with self.db.transaction() as conn:
            row = conn.execute(select(accounts).where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        username: str,
        password_hash: str | None,
        profile: dict | None = None,
        *,
        is_system: bool = False,
    ) -> Account:
        """Insert a new account with a zero balance and return it.

        Raises DuplicateUsername if the normalized username is taken,
        InvalidInput for profile keys outside PROFILE_FIELDS.
        """
        profile = dict(profile or {})
        unknown = set(profile) - PROFILE_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        display = username.strip()
        try:
            with self.db.transaction() as conn:
                result = conn.execute(
                    accounts.insert().values(
                        username=display,
                        username_key=normalize_username(display),
                        password_hash=password_hash,
                        is_system=is_system,
                        token_balance=0,
                        created_at=now_iso(),
                        **profile,
                    )
                )
                account_id = result.inserted_primary_key[0]
                row = conn.execute(select(accounts).where(accounts.c.id == account_id)).fetchone()
        except IntegrityError as exc:
            raise DuplicateUsername() from exc
        logger.info("Account %d created (username=%s)", account_id, display)
        return _row_to_account(row)

    def update_profile(self, account_id: int, **fields) -> bool:
        """Update profile fields (and the premium flag). Returns False if not found.

        Unknown keys raise InvalidInput rather than being silently ignored.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get(account_id) is not None
        with self.db.transaction() as conn:
            result = conn.execute(accounts.update().where(accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def update_password_hash(self, account_id: int, password_hash: str) -> bool:
        """Replace an account's stored hash. Returns False if not found."""
        with self.db.transaction() as conn:
            result = conn.execute(
                accounts.update()
                .where((accounts.c.id == account_id) & (accounts.c.is_system.is_(False)))
                .values(password_hash=password_hash)
            )
        return result.rowcount > 0

    def remove_unfunded(self, account_id: int) -> bool:
        """Delete an account that has never touched the ledger.

        Used only to roll back a registration whose session could not be
        created, so the username is free for the retry. Accounts with a
        balance or any ledger history are never removed.
        """
        with self.db.transaction() as conn:
            has_history = exists().where(ledger_entries.c.account_id == account_id)
            result = conn.execute(
                accounts.delete().where(
                    (accounts.c.id == account_id)
                    & (accounts.c.token_balance == 0)
                    & (accounts.c.is_system.is_(False))
                    & ~has_history
                )
            )
        removed = result.rowcount > 0
        if removed:
            logger.warning("Account %d removed after failed registration", account_id)
        return removed

    def get_or_create_system(self, username: str) -> Account:
        """Return the system account named username, creating it if needed.

        System accounts have no password hash, so login always fails for them.
        Concurrent first calls are safe: the loser of the insert race re-reads.
        """
        existing = self.find_by_username(username)
        if existing is None:
            try:
                return self.create(username, None, is_system=True)
            except DuplicateUsername:
                existing = self.find_by_username(username)
                if existing is None:
                    raise
        if not existing.is_system:
            raise RuntimeError(f"Username {username!r} is held by a regular account")
        return existing


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        is_premium=bool(row.is_premium),
        is_system=bool(row.is_system),
        token_balance=int(row.token_balance),
        created_at=row.created_at,
    )
