"""
tests/test_cli.py -- Tests for the operator CLI in main.py.

Each command runs against the function-scoped container fixture, so the
CLI never builds its own storage here.
"""

from __future__ import annotations

from sqlalchemy import update

from core.database import accounts
from main import main


class TestGrantAndBalance:
    def test_grant_credits_account(self, container, capsys) -> None:
        account = container.directory.create("alice", "hash")
        assert main(["grant", "alice", "500"], container=container) == 0
        assert container.ledger.balance(account.id) == 500
        assert container.ledger.entries(account.id)[0].reason.value == "admin_grant"
        assert "Balance: 500" in capsys.readouterr().out

    def test_grant_with_reason(self, container) -> None:
        account = container.directory.create("alice", "hash")
        assert main(["grant", "alice", "50", "--reason", "daily_login", "--description", "Daily check-in"], container=container) == 0
        entry = container.ledger.entries(account.id)[0]
        assert entry.reason.value == "daily_login"
        assert entry.description == "Daily check-in"

    def test_grant_unknown_account(self, container, capsys) -> None:
        assert main(["grant", "nobody", "5"], container=container) == 1
        assert "[!]" in capsys.readouterr().out

    def test_grant_invalid_amount(self, container) -> None:
        container.directory.create("alice", "hash")
        assert main(["grant", "alice", "0"], container=container) == 1

    def test_balance(self, container, capsys) -> None:
        account = container.directory.create("alice", "hash")
        container.ledger.credit(account.id, 42, "admin_grant")
        assert main(["balance", "alice"], container=container) == 0
        assert "alice: 42 tokens" in capsys.readouterr().out


class TestCreateCollectible:
    def test_create_with_attributes(self, container) -> None:
        account = container.directory.create("alice", "hash")
        argv = ["create-collectible", "alice", "Consistency Seed", "--attributes", '{"rarity": "Uncommon"}', "--mint-cost", "100"]
        assert main(argv, container=container) == 0
        [item] = container.registry.list_for_owner(account.id)
        assert item.attributes == {"rarity": "Uncommon"}
        assert item.mint_cost == 100

    def test_bad_attributes_json(self, container, capsys) -> None:
        container.directory.create("alice", "hash")
        assert main(["create-collectible", "alice", "Seed", "--attributes", "{nope"], container=container) == 1
        assert "not valid JSON" in capsys.readouterr().out


class TestVerifyLedger:
    def test_consistent(self, container, capsys) -> None:
        account = container.directory.create("alice", "hash")
        container.ledger.credit(account.id, 10, "admin_grant")
        assert main(["verify-ledger"], container=container) == 0
        assert main(["verify-ledger", "alice"], container=container) == 0
        assert "OK (10 tokens)" in capsys.readouterr().out

    def test_mismatch(self, container, capsys) -> None:
        account = container.directory.create("alice", "hash")
        container.ledger.credit(account.id, 10, "admin_grant")
        with container.db.transaction() as conn:
            conn.execute(update(accounts).where(accounts.c.id == account.id).values(token_balance=99))
        assert main(["verify-ledger"], container=container) == 1
        assert str(account.id) in capsys.readouterr().out
        assert main(["verify-ledger", "alice"], container=container) == 1


class TestDistributePool:
    def _burn_once(self, container, username: str):
        account = container.directory.create(username, "hash")
        container.ledger.credit(account.id, 350, "admin_grant")
        item = container.registry.create(account.id, "Seed")
        container.registry.mint(account.id, item.id)
        container.registry.burn(account.id, item.id)
        return account

    def test_pays_out(self, container, capsys) -> None:
        account = self._burn_once(container, "alice")
        container.pool.target_tokens = 350
        assert main(["distribute-pool", "--top", "1", "--percentage", "50"], container=container) == 0
        assert container.ledger.balance(account.id) == 175
        assert "Paid 175 tokens to 1 contributor(s)." in capsys.readouterr().out

    def test_below_target(self, container, capsys) -> None:
        self._burn_once(container, "alice")
        assert main(["distribute-pool"], container=container) == 1
        assert "not reached its target" in capsys.readouterr().out


def test_purge_sessions(container, capsys) -> None:
    assert main(["purge-sessions"], container=container) == 0
    assert "Purged 0 expired session(s)." in capsys.readouterr().out


def test_no_command_prints_help(container) -> None:
    assert main([], container=container) == 1
