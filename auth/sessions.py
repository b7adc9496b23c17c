"""
auth/sessions.py -- Server-side sessions behind a pluggable store.

Security design decisions:
  Session ids: secrets.token_urlsafe(32) gives 256 bits of entropy. The id
       is returned once to the caller (who sets it as an httpOnly cookie) and
       is never stored. Stores only see HMAC-SHA256(SECRET_KEY, session_id),
       so a leaked sessions table or Redis dump cannot be replayed as cookies.
       A plain fast HMAC is enough here: the input already has 256 bits of
       entropy, unlike a password.

  Lifecycle: Active -> Expired (now >= expires_at) or Active -> Revoked
       (explicit). Neither Expired nor Revoked can return to Active.
       Expired records are deleted lazily on resolve() and in bulk by
       purge_expired() (run by the API's background task).

  Fixed expiry: 7 days from creation by default. touch() slides the expiry
       forward only when the manager was built with sliding=True.

  Garbage input: resolve(), touch() and revoke() treat anything that is not
       a plausible session id string as "no session". They never raise on
       bad input; storage failures still surface as Unavailable.

Store backends (all implement SessionStore):
  MemorySessionStore -- process-local dict; tests and single-process dev.
  SqlSessionStore    -- sessions table on the shared Database.
  RedisSessionStore  -- redis-py client; native key TTL handles expiry.

No store is fronted by a cache: create() and revoke() are visible to the
very next resolve() from any caller.

Layer rule: no imports from api/, ledger/ or collectibles/.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Protocol

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import delete, select, update

from auth.models import SessionRecord
from core.config import SEVEN_DAYS
from core.database import Database, sessions
from core.errors import Unavailable

logger = logging.getLogger("moodledger.auth.sessions")

_SESSION_ID_BYTES = 32
_MIN_SESSION_ID_LEN = 16
_MAX_SESSION_ID_LEN = 256


def _iso(dt: datetime) -> str:
    # Fixed-width UTC timestamps so stores can compare them as strings.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def redact(session_id: object) -> str:
    """Return a log-safe prefix of a session id."""
    if not isinstance(session_id, str):
        return "<invalid>"
    return f"{session_id[:8]}..."


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    """Persistence interface for session records, keyed by token hash."""

    def save(self, record: SessionRecord) -> None:
        """Insert a new session record."""

    def get(self, token_hash: str) -> SessionRecord | None:
        """Return the record for token_hash, if present."""

    def update_expiry(self, token_hash: str, expires_at: str) -> bool:
        """Move a session's expiry. Returns False if the session is gone."""

    def delete(self, token_hash: str) -> bool:
        """Remove a session. Returns True if one was removed."""

    def delete_for_account(self, account_id: int) -> int:
        """Remove every session of an account. Returns the number removed."""

    def purge_expired(self, now: str) -> int:
        """Remove sessions with expires_at <= now. Returns the number removed."""


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemorySessionStore:
    """Thread-safe dict-backed store. Contents die with the process."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def save(self, record: SessionRecord) -> None:
        with self._lock:
            self._records[record.token_hash] = record

    def get(self, token_hash: str) -> SessionRecord | None:
        with self._lock:
            return self._records.get(token_hash)

    def update_expiry(self, token_hash: str, expires_at: str) -> bool:
        with self._lock:
            record = self._records.get(token_hash)
            if record is None:
                return False
            self._records[token_hash] = SessionRecord(
                token_hash=record.token_hash,
                account_id=record.account_id,
                created_at=record.created_at,
                expires_at=expires_at,
            )
            return True

    def delete(self, token_hash: str) -> bool:
        with self._lock:
            return self._records.pop(token_hash, None) is not None

    def delete_for_account(self, account_id: int) -> int:
        with self._lock:
            doomed = [h for h, r in self._records.items() if r.account_id == account_id]
            for token_hash in doomed:
                del self._records[token_hash]
            return len(doomed)

    def purge_expired(self, now: str) -> int:
        with self._lock:
            doomed = [h for h, r in self._records.items() if r.expires_at <= now]
            for token_hash in doomed:
                del self._records[token_hash]
            return len(doomed)


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------


class SqlSessionStore:
    """Sessions table on the shared Database (indexed on account_id, expires_at)."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def save(self, record: SessionRecord) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                sessions.insert().values(
                    token_hash=record.token_hash,
                    account_id=record.account_id,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
            )

    def get(self, token_hash: str) -> SessionRecord | None:
        with self.db.transaction() as conn:
            row = conn.execute(select(sessions).where(sessions.c.token_hash == token_hash)).fetchone()
        if row is None:
            return None
        return SessionRecord(
            token_hash=row.token_hash,
            account_id=row.account_id,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    def update_expiry(self, token_hash: str, expires_at: str) -> bool:
        with self.db.transaction() as conn:
            result = conn.execute(
                update(sessions).where(sessions.c.token_hash == token_hash).values(expires_at=expires_at)
            )
        return result.rowcount > 0

    def delete(self, token_hash: str) -> bool:
        with self.db.transaction() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_for_account(self, account_id: int) -> int:
        with self.db.transaction() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.account_id == account_id))
        return result.rowcount

    def purge_expired(self, now: str) -> int:
        with self.db.transaction() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.expires_at <= now))
        return result.rowcount


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------


@contextmanager
def _redis_errors() -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.error("Session store unavailable (%s)", exc.__class__.__name__)
        raise Unavailable() from exc


class RedisSessionStore:
    """redis-py backed store for multi-process deployments.

    Each session is a JSON string at <prefix>s:<token_hash> with an absolute
    expiry (PXAT), so Redis drops expired sessions on its own. A set at
    <prefix>a:<account_id> indexes an account's sessions for revoke_all().
    Connection failures and timeouts surface as Unavailable.
    """

    def __init__(self, client, prefix: str = "moodledger:session:") -> None:
        self.client = client
        self.prefix = prefix

    def _key(self, token_hash: str) -> str:
        return f"{self.prefix}s:{token_hash}"

    def _account_key(self, account_id: int) -> str:
        return f"{self.prefix}a:{account_id}"

    @staticmethod
    def _expiry_ms(expires_at: str) -> int:
        return int(datetime.fromisoformat(expires_at).timestamp() * 1000)

    @staticmethod
    def _payload(account_id: int, created_at: str, expires_at: str) -> str:
        return json.dumps({"account_id": account_id, "created_at": created_at, "expires_at": expires_at})

    def save(self, record: SessionRecord) -> None:
        expiry_ms = self._expiry_ms(record.expires_at)
        with _redis_errors():
            pipe = self.client.pipeline(transaction=True)
            pipe.set(
                self._key(record.token_hash),
                self._payload(record.account_id, record.created_at, record.expires_at),
                pxat=expiry_ms,
            )
            pipe.sadd(self._account_key(record.account_id), record.token_hash)
            pipe.pexpireat(self._account_key(record.account_id), expiry_ms)
            pipe.execute()

    def get(self, token_hash: str) -> SessionRecord | None:
        with _redis_errors():
            raw = self.client.get(self._key(token_hash))
        if raw is None:
            return None
        data = json.loads(raw)
        return SessionRecord(
            token_hash=token_hash,
            account_id=int(data["account_id"]),
            created_at=data["created_at"],
            expires_at=data["expires_at"],
        )

    def update_expiry(self, token_hash: str, expires_at: str) -> bool:
        record = self.get(token_hash)
        if record is None:
            return False
        payload = self._payload(record.account_id, record.created_at, expires_at)
        expiry_ms = self._expiry_ms(expires_at)
        with _redis_errors():
            # xx=True: never resurrect a session revoked since the get() above.
            updated = bool(self.client.set(self._key(token_hash), payload, pxat=expiry_ms, xx=True))
            if updated:
                self.client.pexpireat(self._account_key(record.account_id), expiry_ms)
        return updated

    def delete(self, token_hash: str) -> bool:
        record = self.get(token_hash)
        with _redis_errors():
            removed = self.client.delete(self._key(token_hash))
            if record is not None:
                self.client.srem(self._account_key(record.account_id), token_hash)
        return bool(removed)

    def delete_for_account(self, account_id: int) -> int:
        account_key = self._account_key(account_id)
        removed = 0
        with _redis_errors():
            hashes = self.client.smembers(account_key)
            if hashes:
                removed = self.client.delete(*(self._key(_as_str(h)) for h in hashes))
            self.client.delete(account_key)
        return int(removed)

    def purge_expired(self, now: str) -> int:
        # Redis expires keys natively.
        return 0


def _as_str(value: str | bytes) -> str:
    return value.decode("ascii") if isinstance(value, bytes) else value


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Issue, resolve, extend and revoke sessions.

    Usage:
        manager = SessionManager(MemorySessionStore(), secret_key=settings.secret_key)
        sid = manager.create(account_id=42)
        manager.resolve(sid)    # 42
        manager.revoke(sid)
        manager.resolve(sid)    # None
    """

    def __init__(
        self,
        store: SessionStore,
        secret_key: str,
        ttl_seconds: int = SEVEN_DAYS,
        sliding: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.sliding = sliding
        self._secret = secret_key.encode("utf-8")
        self._clock = clock

    def create(self, account_id: int) -> str:
        """Start a session for account_id and return the raw session id."""
        session_id = secrets.token_urlsafe(_SESSION_ID_BYTES)
        now = self._clock()
        record = SessionRecord(
            token_hash=self._hash(session_id),
            account_id=account_id,
            created_at=_iso(now),
            expires_at=_iso(now + self.ttl),
        )
        self.store.save(record)
        logger.info("Session %s created for account %d", redact(session_id), account_id)
        return session_id

    def resolve(self, session_id: object) -> int | None:
        """Return the account id of a live session, or None."""
        record = self._live_record(session_id)
        return record.account_id if record is not None else None

    def touch(self, session_id: object) -> bool:
        """Slide a live session's expiry to now + ttl (sliding mode only)."""
        if not self.sliding:
            return False
        record = self._live_record(session_id)
        if record is None:
            return False
        return self.store.update_expiry(record.token_hash, _iso(self._clock() + self.ttl))

    def revoke(self, session_id: object) -> None:
        """End a session immediately. Revoking an unknown session is a no-op."""
        token_hash = self._hash(session_id)
        if token_hash is None:
            return
        if self.store.delete(token_hash):
            logger.info("Session %s revoked", redact(session_id))

    def revoke_all(self, account_id: int) -> int:
        """End every session of account_id (password change, compromise)."""
        count = self.store.delete_for_account(account_id)
        if count:
            logger.info("Revoked %d session(s) for account %d", count, account_id)
        return count

    def purge_expired(self) -> int:
        """Delete expired sessions from the store. Returns the count removed."""
        count = self.store.purge_expired(_iso(self._clock()))
        if count:
            logger.info("Purged %d expired session(s)", count)
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hash(self, session_id: object) -> str | None:
        if not isinstance(session_id, str):
            return None
        if not (_MIN_SESSION_ID_LEN <= len(session_id) <= _MAX_SESSION_ID_LEN) or not session_id.isascii():
            return None
        return hmac.new(self._secret, session_id.encode("ascii"), hashlib.sha256).hexdigest()

    def _live_record(self, session_id: object) -> SessionRecord | None:
        token_hash = self._hash(session_id)
        if token_hash is None:
            return None
        record = self.store.get(token_hash)
        if record is None:
            return None
        if self._clock() >= datetime.fromisoformat(record.expires_at):
            self.store.delete(token_hash)
            return None
        return record
