"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape.

Layer rule: no imports from api/, ledger/ or collectibles/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Account:
    """An identity that can log in and hold tokens.

    password_hash is the opaque Argon2id encoding produced by
    auth.credentials.PasswordHasher. It is None only for system accounts
    (the community pool), which therefore can never log in.

    token_balance is read-only from this object's point of view: only
    ledger.service.Ledger changes it, and only in the database.
    """

    id: int
    username: str
    password_hash: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_premium: bool = False
    is_system: bool = False
    token_balance: int = 0
    created_at: str = ""


@dataclass(frozen=True)
class SessionRecord:
    """A server-side session as held by a SessionStore.

    token_hash is HMAC-SHA256(SECRET_KEY, session_id). The raw session id
    exists only in the client's cookie and in the return value of
    SessionManager.create().
    """

    token_hash: str
    account_id: int
    created_at: str  # ISO 8601 UTC
    expires_at: str  # ISO 8601 UTC
