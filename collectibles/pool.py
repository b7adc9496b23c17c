"""
collectibles/pool.py -- The community pool: beneficiary of collectible burns.

The pool is a system account (no password, cannot log in, cannot receive
gifts). Each burn credited to it is a pool_contribution ledger entry whose
counterparty is the burner, so contributor totals and ranks are plain
aggregates over the ledger -- there is no separate contributions table to
drift out of sync.

Rounds:
  The pool fills in rounds. Once a round's contributions reach the target,
  an operator runs distribute(): the top contributors each receive an equal
  share of percentage% of the round total, paid out of the pool account as
  pool_distribution ledger entries. Those entries close the round: only
  contributions with a higher ledger id count toward the next one. The rest
  of the round total stays in the pool account.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from auth.directory import IdentityDirectory
from auth.models import Account
from collectibles.models import Contributor, Payout, PoolStats
from core.database import Database, accounts, ledger_entries
from core.errors import InvalidInput, InvalidState
from ledger.models import LedgerReason
from ledger.service import Ledger, new_transaction_id

logger = logging.getLogger("moodledger.pool")

POOL_USERNAME = "community-pool"
DEFAULT_TARGET_TOKENS = 1_000_000
DEFAULT_TOP_CONTRIBUTORS = 50
DEFAULT_TOP_SHARE_PERCENT = 85
# One more burn of a default collectible, used for projected_rank_after_burn.
DEFAULT_PROJECTED_BURN = 350


def _today_start() -> str:
    """Midnight UTC today, in the same ISO form as ledger created_at."""
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0).isoformat()


class CommunityPool:
    """Statistics over the pool's burn credits, and round payouts.

    Usage:
        pool = CommunityPool(db, directory, ledger, target_tokens=1_000_000)
        pool.ensure_account()
        pool.stats(alice.id).rank
        pool.distribute(top_n=50, percentage=85)
    """

    def __init__(
        self,
        db: Database,
        directory: IdentityDirectory,
        ledger: Ledger,
        target_tokens: int = DEFAULT_TARGET_TOKENS,
        projected_burn: int = DEFAULT_PROJECTED_BURN,
    ) -> None:
        self.db = db
        self.directory = directory
        self.ledger = ledger
        self.target_tokens = target_tokens
        self.projected_burn = projected_burn
        self._account_id: int | None = None

    @property
    def account_id(self) -> int:
        if self._account_id is None:
            self._account_id = self.ensure_account().id
        return self._account_id

    def ensure_account(self) -> Account:
        """Create the pool's system account if it does not exist yet."""
        account = self.directory.get_or_create_system(POOL_USERNAME)
        if self._account_id is None:
            logger.info("Community pool account is %d", account.id)
        self._account_id = account.id
        return account

    # ------------------------------------------------------------------
    # Query building blocks
    # ------------------------------------------------------------------

    def _is_distribution(self, table):
        return (table.c.account_id == self.account_id) & (table.c.reason == LedgerReason.pool_distribution.value)

    def _round_entries(self):
        """WHERE clause for the current round's pool_contribution credits."""
        dist = ledger_entries.alias("dist")
        round_start = (
            select(func.coalesce(func.max(dist.c.id), 0)).where(self._is_distribution(dist)).scalar_subquery()
        )
        return (
            (ledger_entries.c.account_id == self.account_id)
            & (ledger_entries.c.reason == LedgerReason.pool_contribution.value)
            & ledger_entries.c.counterparty_id.is_not(None)
            & (ledger_entries.c.id > round_start)
        )

    def _contributions(self):
        """Per-burner totals for the current round: (account_id, tokens) subquery."""
        return (
            select(
                ledger_entries.c.counterparty_id.label("account_id"),
                func.sum(ledger_entries.c.delta).label("tokens"),
            )
            .where(self._round_entries())
            .group_by(ledger_entries.c.counterparty_id)
            .subquery()
        )

    def _round_total(self, conn: Connection) -> int:
        total = conn.execute(
            select(func.coalesce(func.sum(ledger_entries.c.delta), 0)).where(self._round_entries())
        ).scalar()
        return int(total)

    def _round_number(self, conn: Connection) -> int:
        finished = conn.execute(
            select(func.count(func.distinct(ledger_entries.c.transaction_id))).where(
                self._is_distribution(ledger_entries)
            )
        ).scalar()
        return int(finished or 0) + 1

    def _ranked(self, conn: Connection, contributions, limit: int):
        return conn.execute(
            select(contributions.c.account_id, contributions.c.tokens, accounts.c.username)
            .join(accounts, accounts.c.id == contributions.c.account_id)
            .order_by(contributions.c.tokens.desc(), contributions.c.account_id)
            .limit(limit)
        ).fetchall()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def stats(self, account_id: int | None = None) -> PoolStats:
        """Round total, progress toward the target and contributor figures.

        With account_id, also that account's contributed total, its rank
        (1 = largest contributor; None if it has not contributed) and the
        rank it would hold after burning projected_burn more tokens.
        """
        contributions = self._contributions()
        with self.db.transaction() as conn:
            total = self._round_total(conn)
            contributor_count = conn.execute(select(func.count()).select_from(contributions)).scalar() or 0
            today_burned = conn.execute(
                select(func.coalesce(func.sum(ledger_entries.c.delta), 0)).where(
                    self._round_entries() & (ledger_entries.c.created_at >= _today_start())
                )
            ).scalar()
            top = self._ranked(conn, contributions, 1)
            distribution_round = self._round_number(conn)

            contributed = 0
            rank = None
            projected = None
            if account_id is not None:
                contributed = conn.execute(
                    select(contributions.c.tokens).where(contributions.c.account_id == account_id)
                ).scalar() or 0
                if contributed > 0:
                    ahead = conn.execute(
                        select(func.count()).select_from(contributions).where(contributions.c.tokens > contributed)
                    ).scalar()
                    rank = int(ahead) + 1
                    ahead_after = conn.execute(
                        select(func.count())
                        .select_from(contributions)
                        .where(
                            (contributions.c.account_id != account_id)
                            & (contributions.c.tokens > int(contributed) + self.projected_burn)
                        )
                    ).scalar()
                    projected = int(ahead_after) + 1

        progress = 0.0
        if self.target_tokens > 0:
            progress = round(min(100.0, total * 100.0 / self.target_tokens), 2)
        return PoolStats(
            total_tokens=total,
            target_tokens=self.target_tokens,
            progress_percent=progress,
            contributor_count=int(contributor_count),
            distribution_round=distribution_round,
            today_burned=int(today_burned),
            top_contributor_username=top[0].username if top else None,
            top_contributor_tokens=int(top[0].tokens) if top else 0,
            contributed_tokens=int(contributed),
            rank=rank,
            projected_rank_after_burn=projected,
        )

    def top_contributors(self, limit: int = 50) -> list[Contributor]:
        """Largest contributors of the current round first. Ties are broken by account id."""
        contributions = self._contributions()
        with self.db.transaction() as conn:
            rows = self._ranked(conn, contributions, limit)
        return [
            Contributor(rank=i, account_id=r.account_id, username=r.username, tokens_burned=int(r.tokens))
            for i, r in enumerate(rows, start=1)
        ]

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    def distribute(
        self,
        top_n: int = DEFAULT_TOP_CONTRIBUTORS,
        percentage: int = DEFAULT_TOP_SHARE_PERCENT,
    ) -> list[Payout]:
        """Pay the current round's top contributors and open the next round.

        Each of the top_n contributors receives
        floor(round_total * percentage / 100 / top_n) tokens. All payouts
        share one transaction id and commit together.

        Raises InvalidInput for out-of-range arguments and InvalidState when
        the round has not reached its target or the share rounds to zero.
        """
        for value, name, upper in ((top_n, "top_n", 1000), (percentage, "percentage", 100)):
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= upper:
                raise InvalidInput(f"{name} must be a whole number between 1 and {upper}.")

        contributions = self._contributions()
        transaction_id = new_transaction_id()
        payouts: list[Payout] = []
        with self.db.transaction() as conn:
            # Serializes against burns and other payouts on the pool row.
            conn.execute(select(accounts.c.id).where(accounts.c.id == self.account_id).with_for_update()).fetchall()
            total = self._round_total(conn)
            if total < self.target_tokens:
                raise InvalidState("The pool has not reached its target yet.")
            share = total * percentage // 100 // top_n
            if share == 0:
                raise InvalidState("The pool is too small to pay out.")
            distribution_round = self._round_number(conn)
            for rank, row in enumerate(self._ranked(conn, contributions, top_n), start=1):
                description = f"Pool round {distribution_round} reward (rank #{rank})"
                self.ledger.debit_in(
                    conn,
                    self.account_id,
                    share,
                    LedgerReason.pool_distribution,
                    description,
                    transaction_id=transaction_id,
                    counterparty_id=row.account_id,
                )
                self.ledger.credit_in(
                    conn,
                    row.account_id,
                    share,
                    LedgerReason.pool_distribution,
                    description,
                    transaction_id=transaction_id,
                    counterparty_id=self.account_id,
                )
                payouts.append(Payout(rank=rank, account_id=row.account_id, username=row.username, tokens=share))
        logger.info(
            "Pool round %d distributed: %d tokens to each of %d contributors (tx %s)",
            distribution_round,
            share,
            len(payouts),
            transaction_id,
        )
        return payouts
