"""
ledger/service.py -- Per-account integer token balances with an audit trail.

The Ledger is the ONLY code allowed to change accounts.token_balance. Reward
features, transfers, mints and burns all go through credit/debit here.

Invariants:
  balance >= 0 at all times. debit() is one conditional UPDATE:
      UPDATE accounts SET token_balance = token_balance - :amount
       WHERE id = :id AND token_balance >= :amount
      The check and the decrement are a single statement, so two concurrent
      debits can never both see enough tokens. The loser matches zero rows
      and gets InsufficientBalance. The CHECK constraint on the column is
      the storage-level backstop.

  balance == SUM(delta) of the account's ledger entries. Every balance
      change appends its entry in the same transaction. verify() checks the
      equation and raises LedgerCorruption (logged CRITICAL) on mismatch --
      it never "repairs" a balance.

  All-or-nothing: each public operation is one DB transaction. transfer()
      debits and credits inside the same transaction, locking both account
      rows in id order first so opposite-direction transfers cannot
      deadlock. A crash between the legs rolls both back.

Composability: credit_in()/debit_in() run on a caller-supplied connection so
collectibles/registry.py can put a ledger movement and a state change in the
same transaction.

Layer rule: no imports from api/ or collectibles/.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.engine import Connection

from core.database import Database, accounts, ledger_entries, now_iso
from core.errors import AccountNotFound, InsufficientBalance, InvalidInput, InvalidTarget, LedgerCorruption
from ledger.models import LedgerEntry, LedgerReason

logger = logging.getLogger("moodledger.ledger")

# Keeps any realistic balance far inside a signed 64-bit column.
MAX_AMOUNT = 10**15
MAX_DESCRIPTION_LENGTH = 500


def new_transaction_id() -> str:
    return uuid.uuid4().hex


def _check_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput("Amount must be a whole number of tokens.")
    if amount <= 0:
        raise InvalidInput("Amount must be positive.")
    if amount > MAX_AMOUNT:
        raise InvalidInput("Amount is too large.")
    return amount


def _check_reason(reason: LedgerReason | str) -> LedgerReason:
    try:
        return LedgerReason(reason)
    except ValueError as exc:
        raise InvalidInput(f"Unknown ledger reason: {reason!r}") from exc


def _check_description(description: object) -> str:
    if description is None:
        return ""
    if not isinstance(description, str):
        raise InvalidInput("Description must be text.")
    return description[:MAX_DESCRIPTION_LENGTH]


class Ledger:
    """Credit, debit and transfer tokens; read balances and history.

    Usage:
        ledger = Ledger(db)
        ledger.credit(account_id, 50, LedgerReason.daily_login, "Daily check-in")
        ledger.debit(account_id, 20, LedgerReason.token_transfer, "Gift to a friend")
        ledger.balance(account_id)   # 30
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def credit(
        self,
        account_id: int,
        amount: int,
        reason: LedgerReason | str,
        description: str = "",
    ) -> int:
        """Add amount tokens to an account. Returns the new balance."""
        with self.db.transaction() as conn:
            balance = self.credit_in(conn, account_id, amount, reason, description)
        logger.info("Credited %d to account %d (%s); balance %d", amount, account_id, _check_reason(reason).value, balance)
        return balance

    def debit(
        self,
        account_id: int,
        amount: int,
        reason: LedgerReason | str,
        description: str = "",
    ) -> int:
        """Remove amount tokens from an account. Returns the new balance.

        Raises InsufficientBalance if the account holds fewer than amount.
        """
        with self.db.transaction() as conn:
            balance = self.debit_in(conn, account_id, amount, reason, description)
        logger.info("Debited %d from account %d (%s); balance %d", amount, account_id, _check_reason(reason).value, balance)
        return balance

    def transfer(self, from_account_id: int, to_account_id: int, amount: int, description: str = "") -> str:
        """Move tokens between two accounts atomically. Returns the transaction id."""
        _check_amount(amount)
        if from_account_id == to_account_id:
            raise InvalidTarget("Cannot transfer tokens to the same account.")
        transaction_id = new_transaction_id()
        with self.db.transaction() as conn:
            self._lock_accounts(conn, from_account_id, to_account_id)
            self.debit_in(
                conn,
                from_account_id,
                amount,
                LedgerReason.token_transfer,
                description,
                transaction_id=transaction_id,
                counterparty_id=to_account_id,
            )
            self.credit_in(
                conn,
                to_account_id,
                amount,
                LedgerReason.token_transfer,
                description,
                transaction_id=transaction_id,
                counterparty_id=from_account_id,
            )
        logger.info("Transferred %d from account %d to %d (tx %s)", amount, from_account_id, to_account_id, transaction_id)
        return transaction_id

    # ------------------------------------------------------------------
    # Composable primitives (caller owns the transaction)
    # ------------------------------------------------------------------

    def credit_in(
        self,
        conn: Connection,
        account_id: int,
        amount: int,
        reason: LedgerReason | str,
        description: str = "",
        *,
        transaction_id: str | None = None,
        counterparty_id: int | None = None,
    ) -> int:
        """credit() on an open connection. Returns the new balance."""
        amount = _check_amount(amount)
        reason = _check_reason(reason)
        description = _check_description(description)
        row = conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(token_balance=accounts.c.token_balance + amount)
            .returning(accounts.c.token_balance)
        ).fetchone()
        if row is None:
            raise AccountNotFound()
        self._append(conn, account_id, amount, reason, description, transaction_id, counterparty_id)
        return int(row.token_balance)

    def debit_in(
        self,
        conn: Connection,
        account_id: int,
        amount: int,
        reason: LedgerReason | str,
        description: str = "",
        *,
        transaction_id: str | None = None,
        counterparty_id: int | None = None,
    ) -> int:
        """debit() on an open connection. Returns the new balance."""
        amount = _check_amount(amount)
        reason = _check_reason(reason)
        description = _check_description(description)
        row = conn.execute(
            update(accounts)
            .where((accounts.c.id == account_id) & (accounts.c.token_balance >= amount))
            .values(token_balance=accounts.c.token_balance - amount)
            .returning(accounts.c.token_balance)
        ).fetchone()
        if row is None:
            exists = conn.execute(select(accounts.c.id).where(accounts.c.id == account_id)).fetchone()
            if exists is None:
                raise AccountNotFound()
            raise InsufficientBalance(f"Not enough tokens. This requires {amount} tokens.")
        self._append(conn, account_id, -amount, reason, description, transaction_id, counterparty_id)
        return int(row.token_balance)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, account_id: int) -> int:
        """Return the current balance. Raises AccountNotFound."""
        with self.db.transaction() as conn:
            row = conn.execute(select(accounts.c.token_balance).where(accounts.c.id == account_id)).fetchone()
        if row is None:
            raise AccountNotFound()
        return int(row.token_balance)

    def entries(self, account_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """Return an account's ledger entries, newest first."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                select(ledger_entries)
                .where(ledger_entries.c.account_id == account_id)
                .order_by(ledger_entries.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def verify(self, account_id: int) -> int:
        """Check balance == SUM(delta) for one account. Returns the balance.

        Raises LedgerCorruption on mismatch. This is an operator alert
        condition: the affected operation halts and nothing is auto-fixed.
        """
        with self.db.transaction() as conn:
            row = conn.execute(select(accounts.c.token_balance).where(accounts.c.id == account_id)).fetchone()
            if row is None:
                raise AccountNotFound()
            total = conn.execute(
                select(func.coalesce(func.sum(ledger_entries.c.delta), 0)).where(
                    ledger_entries.c.account_id == account_id
                )
            ).scalar()
        balance = int(row.token_balance)
        if balance != int(total):
            logger.critical(
                "LEDGER MISMATCH account=%d stored_balance=%d ledger_sum=%d -- operator action required",
                account_id,
                balance,
                int(total),
            )
            raise LedgerCorruption()
        return balance

    def verify_all(self) -> list[int]:
        """Verify every account. Returns the ids that failed (already logged)."""
        with self.db.transaction() as conn:
            ids = [r.id for r in conn.execute(select(accounts.c.id).order_by(accounts.c.id)).fetchall()]
        failed: list[int] = []
        for account_id in ids:
            try:
                self.verify(account_id)
            except LedgerCorruption:
                failed.append(account_id)
        return failed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_accounts(conn: Connection, *account_ids: int) -> None:
        # Row locks in id order (PostgreSQL). SQLite already holds the
        # database write lock from BEGIN IMMEDIATE and ignores FOR UPDATE.
        conn.execute(
            select(accounts.c.id).where(accounts.c.id.in_(sorted(set(account_ids)))).order_by(accounts.c.id).with_for_update()
        ).fetchall()

    @staticmethod
    def _append(
        conn: Connection,
        account_id: int,
        delta: int,
        reason: LedgerReason,
        description: str,
        transaction_id: str | None,
        counterparty_id: int | None,
    ) -> None:
        conn.execute(
            ledger_entries.insert().values(
                account_id=account_id,
                delta=delta,
                reason=reason.value,
                description=description,
                transaction_id=transaction_id or new_transaction_id(),
                counterparty_id=counterparty_id,
                created_at=now_iso(),
            )
        )


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        account_id=row.account_id,
        delta=int(row.delta),
        reason=LedgerReason(row.reason),
        description=row.description,
        transaction_id=row.transaction_id,
        created_at=row.created_at,
        counterparty_id=row.counterparty_id,
    )
