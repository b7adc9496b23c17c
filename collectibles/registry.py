"""
collectibles/registry.py -- Collectible records and their mint/burn/gift
state machine.

Pattern: Repository + Data Mapper over the collectibles table, with the
token movements delegated to ledger/service.py.

State machine:
    unminted --mint (debit mint_cost)--> minted --burn (credit burn_value)--> burned
                                         minted --gift--> minted (new owner)

Atomicity:
  Every transition is one DB transaction that first moves the state with a
  conditional UPDATE ("... WHERE id = :id AND owner = :caller AND state =
  :expected") and then performs the ledger movement on the same connection.
  If the debit fails (InsufficientBalance) the state change rolls back with
  it, so a collectible is never minted without the tokens being spent, and
  two concurrent mints of the same record cannot both succeed -- the second
  UPDATE matches zero rows.

  When the UPDATE matches nothing, the row is read back to classify the
  failure: CollectibleNotFound, then NotOwner, then InvalidState.

Burn beneficiary:
  "pool"  -- burn_value is credited to the community pool account with the
             burner recorded as counterparty (pool statistics read this).
  "owner" -- burn_value is credited back to the burner.

Gifting:
  Only minted collectibles can be gifted; ownership moves to the recipient.
  With single_gift=True (the default) a collectible that has been gifted
  once can never be gifted again, by anyone.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from core.database import Database, accounts, collectibles, now_iso
from core.errors import (
    AccountNotFound,
    CollectibleNotFound,
    InvalidInput,
    InvalidState,
    InvalidTarget,
    NotOwner,
)
from collectibles.models import Collectible, CollectibleState
from ledger.models import LedgerReason
from ledger.service import MAX_AMOUNT, Ledger

logger = logging.getLogger("moodledger.collectibles")

DEFAULT_MINT_COST = 350
MAX_NAME_LENGTH = 200

_INVALID_STATE_MESSAGES = {
    "mint": "This collectible is already minted or burned.",
    "burn": "This collectible must be minted before it can be burned.",
    "gift": "Only minted collectibles can be gifted.",
}


def _check_cost(value: object, name: str, *, allow_zero: bool) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be a whole number of tokens.")
    if value < 0 or (value == 0 and not allow_zero) or value > MAX_AMOUNT:
        raise InvalidInput(f"{name} is out of range.")
    return value


class CollectibleRegistry:
    """Create, list, mint, burn and gift collectibles.

    Usage:
        registry = CollectibleRegistry(db, ledger, pool_account_id=pool.id)
        item = registry.create(alice.id, "Consistency Seed", {"rarity": "Uncommon"})
        registry.mint(alice.id, item.id)        # debits 350 tokens
        registry.gift(alice.id, item.id, bob.id)
        registry.burn(bob.id, item.id)          # credits 350 to the pool
    """

    def __init__(
        self,
        db: Database,
        ledger: Ledger,
        *,
        pool_account_id: int | None = None,
        burn_beneficiary: str = "pool",
        default_mint_cost: int = DEFAULT_MINT_COST,
        single_gift: bool = True,
    ) -> None:
        if burn_beneficiary not in ("pool", "owner"):
            raise ValueError(f"Unknown burn beneficiary: {burn_beneficiary!r}")
        if burn_beneficiary == "pool" and pool_account_id is None:
            raise ValueError("burn_beneficiary='pool' requires pool_account_id")
        self.db = db
        self.ledger = ledger
        self.pool_account_id = pool_account_id
        self.burn_beneficiary = burn_beneficiary
        self.default_mint_cost = _check_cost(default_mint_cost, "Mint cost", allow_zero=False)
        self.single_gift = single_gift

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def create(
        self,
        owner_id: int,
        name: str,
        attributes: dict | None = None,
        mint_cost: int | None = None,
        burn_value: int | None = None,
    ) -> Collectible:
        """Create an unminted collectible owned by owner_id.

        burn_value defaults to mint_cost. Both are fixed for the life of
        the record.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidInput("Collectible name is required.")
        if len(name.strip()) > MAX_NAME_LENGTH:
            raise InvalidInput(f"Collectible name must be at most {MAX_NAME_LENGTH} characters.")
        if attributes is None:
            attributes = {}
        if not isinstance(attributes, dict):
            raise InvalidInput("Attributes must be a JSON object.")
        try:
            attributes_json = json.dumps(attributes, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise InvalidInput("Attributes must be JSON-serializable.") from exc
        cost = self.default_mint_cost if mint_cost is None else _check_cost(mint_cost, "Mint cost", allow_zero=False)
        value = cost if burn_value is None else _check_cost(burn_value, "Burn value", allow_zero=True)

        with self.db.transaction() as conn:
            owner = conn.execute(select(accounts.c.is_system).where(accounts.c.id == owner_id)).fetchone()
            if owner is None:
                raise AccountNotFound()
            if owner.is_system:
                raise InvalidTarget("System accounts cannot own collectibles.")
            result = conn.execute(
                collectibles.insert().values(
                    owner_account_id=owner_id,
                    name=name.strip(),
                    attributes=attributes_json,
                    state=CollectibleState.unminted.value,
                    mint_cost=cost,
                    burn_value=value,
                    created_at=now_iso(),
                )
            )
            collectible_id = result.inserted_primary_key[0]
            row = self._fetch(conn, collectible_id)
        logger.info("Collectible %d (%s) created for account %d", collectible_id, name.strip(), owner_id)
        return _row_to_collectible(row)

    def get(self, collectible_id: int) -> Collectible:
        """Return a collectible or raise CollectibleNotFound."""
        with self.db.transaction() as conn:
            row = self._fetch(conn, collectible_id)
        if row is None:
            raise CollectibleNotFound()
        return _row_to_collectible(row)

    def list_for_owner(self, owner_id: int, state: CollectibleState | str | None = None) -> list[Collectible]:
        """Return an account's collectibles, optionally filtered by state."""
        query = select(collectibles).where(collectibles.c.owner_account_id == owner_id)
        if state is not None:
            try:
                state = CollectibleState(state)
            except ValueError as exc:
                raise InvalidInput(f"Unknown collectible state: {state!r}") from exc
            query = query.where(collectibles.c.state == state.value)
        with self.db.transaction() as conn:
            rows = conn.execute(query.order_by(collectibles.c.id)).fetchall()
        return [_row_to_collectible(r) for r in rows]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mint(self, caller_id: int, collectible_id: int) -> Collectible:
        """Spend mint_cost tokens to move an unminted collectible to minted."""
        with self.db.transaction() as conn:
            row = conn.execute(
                update(collectibles)
                .where(
                    (collectibles.c.id == collectible_id)
                    & (collectibles.c.owner_account_id == caller_id)
                    & (collectibles.c.state == CollectibleState.unminted.value)
                )
                .values(state=CollectibleState.minted.value, minted_at=now_iso())
                .returning(collectibles)
            ).fetchone()
            if row is None:
                self._raise_for(conn, caller_id, collectible_id, "mint")
            # InsufficientBalance here rolls the state change back too.
            self.ledger.debit_in(
                conn,
                caller_id,
                row.mint_cost,
                LedgerReason.collectible_mint,
                f'Minted "{row.name}"',
            )
        logger.info("Collectible %d minted by account %d for %d tokens", collectible_id, caller_id, row.mint_cost)
        return _row_to_collectible(row)

    def burn(self, caller_id: int, collectible_id: int) -> Collectible:
        """Destroy a minted collectible and credit its burn value."""
        with self.db.transaction() as conn:
            row = conn.execute(
                update(collectibles)
                .where(
                    (collectibles.c.id == collectible_id)
                    & (collectibles.c.owner_account_id == caller_id)
                    & (collectibles.c.state == CollectibleState.minted.value)
                )
                .values(state=CollectibleState.burned.value, burned_at=now_iso())
                .returning(collectibles)
            ).fetchone()
            if row is None:
                self._raise_for(conn, caller_id, collectible_id, "burn")
            if row.burn_value > 0:
                if self.burn_beneficiary == "pool":
                    self.ledger.credit_in(
                        conn,
                        self.pool_account_id,
                        row.burn_value,
                        LedgerReason.pool_contribution,
                        f'Burned "{row.name}"',
                        counterparty_id=caller_id,
                    )
                else:
                    self.ledger.credit_in(
                        conn,
                        caller_id,
                        row.burn_value,
                        LedgerReason.collectible_burn,
                        f'Burned "{row.name}"',
                    )
        logger.info(
            "Collectible %d burned by account %d (%d tokens to %s)",
            collectible_id,
            caller_id,
            row.burn_value,
            self.burn_beneficiary,
        )
        return _row_to_collectible(row)

    def gift(self, caller_id: int, collectible_id: int, to_account_id: int) -> Collectible:
        """Transfer ownership of a minted collectible to another account.

        Ownership is checked before the recipient: a caller who does not
        own the collectible gets NotOwner whatever the target.
        """
        with self.db.transaction() as conn:
            current = self._fetch(conn, collectible_id)
            if current is None:
                raise CollectibleNotFound()
            if current.owner_account_id != caller_id:
                raise NotOwner()
            if to_account_id == current.owner_account_id:
                raise InvalidTarget("You cannot gift a collectible to yourself.")
            recipient = conn.execute(
                select(accounts.c.is_system).where(accounts.c.id == to_account_id)
            ).fetchone()
            if recipient is None or recipient.is_system:
                raise InvalidTarget()
            condition = (
                (collectibles.c.id == collectible_id)
                & (collectibles.c.owner_account_id == caller_id)
                & (collectibles.c.state == CollectibleState.minted.value)
            )
            if self.single_gift:
                condition = condition & collectibles.c.gifted_to_account_id.is_(None)
            row = conn.execute(
                update(collectibles)
                .where(condition)
                .values(owner_account_id=to_account_id, gifted_to_account_id=to_account_id, gifted_at=now_iso())
                .returning(collectibles)
            ).fetchone()
            if row is None:
                self._raise_for(conn, caller_id, collectible_id, "gift")
        logger.info("Collectible %d gifted by account %d to account %d", collectible_id, caller_id, to_account_id)
        return _row_to_collectible(row)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch(conn: Connection, collectible_id: int):
        return conn.execute(select(collectibles).where(collectibles.c.id == collectible_id)).fetchone()

    def _raise_for(self, conn: Connection, caller_id: int, collectible_id: int, action: str) -> None:
        """Classify why a conditional transition matched no row, and raise."""
        row = self._fetch(conn, collectible_id)
        if row is None:
            raise CollectibleNotFound()
        if row.owner_account_id != caller_id:
            raise NotOwner()
        if action == "gift" and row.state == CollectibleState.minted.value and row.gifted_to_account_id is not None:
            raise InvalidState("This collectible has already been gifted once.")
        raise InvalidState(_INVALID_STATE_MESSAGES[action])


def _row_to_collectible(row) -> Collectible:
    return Collectible(
        id=row.id,
        owner_account_id=row.owner_account_id,
        name=row.name,
        state=CollectibleState(row.state),
        mint_cost=int(row.mint_cost),
        burn_value=int(row.burn_value),
        created_at=row.created_at,
        attributes=json.loads(row.attributes) if row.attributes else {},
        minted_at=row.minted_at,
        burned_at=row.burned_at,
        gifted_to_account_id=row.gifted_to_account_id,
        gifted_at=row.gifted_at,
    )
