"""
tests/test_sessions.py -- Unit tests for auth/sessions.py.

Coverage:
  - create/resolve/revoke lifecycle on the memory and SQL stores
  - fixed 7-day expiry by default, lazy deletion of expired sessions
  - sliding expiry via touch() only when enabled
  - garbage input resolves to None and never raises
  - raw session ids never reach the store (only the HMAC does)
  - revoke_all and purge_expired
  - RedisSessionStore against a MagicMock client, incl. outage -> Unavailable
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from auth.models import SessionRecord
from auth.sessions import MemorySessionStore, RedisSessionStore, SessionManager, SqlSessionStore
from core.database import Database, sessions
from core.errors import Unavailable

SECRET = "x" * 40


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path):
    database = Database(f"sqlite:///{tmp_path / 'sessions.db'}")
    yield database
    database.close()


@pytest.fixture(params=["memory", "sql"])
def manager(request, clock: FakeClock, db: Database) -> SessionManager:
    store = MemorySessionStore() if request.param == "memory" else SqlSessionStore(db)
    return SessionManager(store, secret_key=SECRET, clock=clock)


class TestLifecycle:
    def test_create_then_resolve(self, manager: SessionManager) -> None:
        sid = manager.create(42)
        assert manager.resolve(sid) == 42

    def test_session_ids_are_unique_and_long(self, manager: SessionManager) -> None:
        ids = {manager.create(1) for _ in range(20)}
        assert len(ids) == 20
        assert all(len(sid) >= 43 for sid in ids)

    def test_revoke_ends_session(self, manager: SessionManager) -> None:
        sid = manager.create(42)
        manager.revoke(sid)
        assert manager.resolve(sid) is None

    def test_revoke_is_idempotent(self, manager: SessionManager) -> None:
        sid = manager.create(42)
        manager.revoke(sid)
        manager.revoke(sid)
        manager.revoke("never-issued-session-id-value")
        assert manager.resolve(sid) is None

    def test_revoke_one_leaves_others(self, manager: SessionManager) -> None:
        a = manager.create(42)
        b = manager.create(42)
        manager.revoke(a)
        assert manager.resolve(b) == 42

    def test_revoke_all(self, manager: SessionManager) -> None:
        a = manager.create(42)
        b = manager.create(42)
        other = manager.create(7)
        assert manager.revoke_all(42) == 2
        assert manager.resolve(a) is None
        assert manager.resolve(b) is None
        assert manager.resolve(other) == 7


class TestExpiry:
    def test_valid_just_before_seven_days(self, manager: SessionManager, clock: FakeClock) -> None:
        sid = manager.create(42)
        clock.advance(days=7, seconds=-1)
        assert manager.resolve(sid) == 42

    def test_expired_at_seven_days(self, manager: SessionManager, clock: FakeClock) -> None:
        sid = manager.create(42)
        clock.advance(days=7)
        assert manager.resolve(sid) is None

    def test_expired_session_stays_expired(self, manager: SessionManager, clock: FakeClock) -> None:
        sid = manager.create(42)
        clock.advance(days=8)
        assert manager.resolve(sid) is None
        clock.now -= timedelta(days=8)
        # Lazily deleted on the first failed resolve; rewinding cannot revive it.
        assert manager.resolve(sid) is None

    def test_touch_is_noop_without_sliding(self, manager: SessionManager, clock: FakeClock) -> None:
        sid = manager.create(42)
        clock.advance(days=6)
        assert manager.touch(sid) is False
        clock.advance(days=1)
        assert manager.resolve(sid) is None

    def test_purge_expired(self, manager: SessionManager, clock: FakeClock) -> None:
        old = manager.create(1)
        clock.advance(days=5)
        fresh = manager.create(2)
        clock.advance(days=3)
        assert manager.purge_expired() == 1
        assert manager.resolve(old) is None
        assert manager.resolve(fresh) == 2


class TestSliding:
    def test_touch_extends_expiry(self, clock: FakeClock) -> None:
        manager = SessionManager(MemorySessionStore(), secret_key=SECRET, sliding=True, clock=clock)
        sid = manager.create(42)
        clock.advance(days=6)
        assert manager.touch(sid) is True
        clock.advance(days=6)
        assert manager.resolve(sid) == 42

    def test_touch_cannot_revive_revoked(self, clock: FakeClock) -> None:
        manager = SessionManager(MemorySessionStore(), secret_key=SECRET, sliding=True, clock=clock)
        sid = manager.create(42)
        manager.revoke(sid)
        assert manager.touch(sid) is False
        assert manager.resolve(sid) is None

    def test_non_positive_ttl_refused(self) -> None:
        with pytest.raises(ValueError):
            SessionManager(MemorySessionStore(), secret_key=SECRET, ttl_seconds=0)


class TestGarbageInput:
    @pytest.mark.parametrize("garbage", [None, "", "short", 12345, b"bytes-session-id-value", "x" * 5000, "ünïcödé-session-id-value"])
    def test_resolve_returns_none(self, manager: SessionManager, garbage) -> None:
        assert manager.resolve(garbage) is None
        manager.revoke(garbage)
        assert manager.touch(garbage) is False

    def test_different_secret_cannot_resolve(self, clock: FakeClock) -> None:
        store = MemorySessionStore()
        a = SessionManager(store, secret_key=SECRET, clock=clock)
        b = SessionManager(store, secret_key="y" * 40, clock=clock)
        sid = a.create(42)
        assert b.resolve(sid) is None


class TestStorageForm:
    def test_raw_id_never_stored(self, db: Database, clock: FakeClock) -> None:
        manager = SessionManager(SqlSessionStore(db), secret_key=SECRET, clock=clock)
        sid = manager.create(42)
        with db.transaction() as conn:
            rows = conn.execute(select(sessions)).fetchall()
        assert len(rows) == 1
        assert rows[0].token_hash != sid
        assert sid not in rows[0].token_hash
        assert len(rows[0].token_hash) == 64


class TestRedisStore:
    def _record(self) -> SessionRecord:
        return SessionRecord(
            token_hash="ab" * 32,
            account_id=42,
            created_at="2026-01-01T12:00:00.000000+00:00",
            expires_at="2026-01-08T12:00:00.000000+00:00",
        )

    def test_save_sets_key_with_absolute_expiry(self) -> None:
        client = MagicMock()
        pipe = client.pipeline.return_value
        store = RedisSessionStore(client, prefix="t:")
        store.save(self._record())
        client.pipeline.assert_called_once_with(transaction=True)
        key, payload = pipe.set.call_args.args
        assert key == "t:s:" + "ab" * 32
        assert json.loads(payload)["account_id"] == 42
        expected_ms = int(datetime(2026, 1, 8, 12, tzinfo=timezone.utc).timestamp() * 1000)
        assert pipe.set.call_args.kwargs["pxat"] == expected_ms
        pipe.sadd.assert_called_once_with("t:a:42", "ab" * 32)
        pipe.execute.assert_called_once()

    def test_get_decodes_record(self) -> None:
        client = MagicMock()
        record = self._record()
        client.get.return_value = json.dumps(
            {"account_id": 42, "created_at": record.created_at, "expires_at": record.expires_at}
        ).encode()
        store = RedisSessionStore(client, prefix="t:")
        assert store.get(record.token_hash) == record

    def test_get_missing_returns_none(self) -> None:
        client = MagicMock()
        client.get.return_value = None
        assert RedisSessionStore(client).get("00" * 32) is None

    def test_delete_for_account(self) -> None:
        client = MagicMock()
        client.smembers.return_value = {b"aa", b"bb"}
        client.delete.side_effect = [2, 1]
        store = RedisSessionStore(client, prefix="t:")
        assert store.delete_for_account(42) == 2
        deleted_keys = set(client.delete.call_args_list[0].args)
        assert deleted_keys == {"t:s:aa", "t:s:bb"}
        assert client.delete.call_args_list[1].args == ("t:a:42",)

    def test_outage_surfaces_as_unavailable(self) -> None:
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("connection refused")
        store = RedisSessionStore(client)
        with pytest.raises(Unavailable):
            store.get("00" * 32)

    def test_manager_resolve_propagates_outage(self, clock: FakeClock) -> None:
        """A store outage is not "no session": callers get Unavailable, not a logout."""
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("connection refused")
        manager = SessionManager(RedisSessionStore(client), secret_key=SECRET, clock=clock)
        with pytest.raises(Unavailable):
            manager.resolve("a-plausible-session-id-value-000")
