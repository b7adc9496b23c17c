"""
tests/test_database.py -- Tests for core/database.py.

Coverage:
  - a write lock held past timeout_seconds surfaces as Unavailable
  - ping() reports False while storage is locked, True once released
  - the CHECK constraint rejects a negative balance written around the ledger
"""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from core.database import Database, accounts, now_iso
from core.errors import Unavailable


@pytest.fixture
def db(tmp_path: Path):
    database = Database(f"sqlite:///{tmp_path / 'locks.db'}", timeout_seconds=0.2)
    yield database
    database.close()


class TestTimeouts:
    def test_lock_wait_is_bounded(self, db: Database) -> None:
        """A second writer gives up after timeout_seconds instead of hanging."""
        with db.transaction() as holder:
            holder.exec_driver_sql("SELECT 1")
            with pytest.raises(Unavailable):
                with db.transaction() as conn:
                    conn.exec_driver_sql("SELECT 1")

    def test_ping_reflects_lock(self, db: Database) -> None:
        with db.transaction() as holder:
            holder.exec_driver_sql("SELECT 1")
            assert db.ping() is False
        assert db.ping() is True


class TestConstraints:
    def test_negative_balance_rejected_by_storage(self, db: Database) -> None:
        with db.transaction() as conn:
            conn.execute(accounts.insert().values(id=1, username="alice", username_key="alice", created_at=now_iso()))
        with pytest.raises(IntegrityError):
            with db.transaction() as conn:
                conn.execute(update(accounts).where(accounts.c.id == 1).values(token_balance=-1))
