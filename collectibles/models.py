"""
collectibles/models.py -- Domain dataclasses for collectible records and the
community pool.

Pattern: Data class (pure data container, zero logic).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CollectibleState(str, Enum):
    """Lifecycle: unminted -> minted -> burned. burned is terminal."""

    unminted = "unminted"
    minted = "minted"
    burned = "burned"


@dataclass
class Collectible:
    id: int
    owner_account_id: int
    name: str
    state: CollectibleState
    mint_cost: int  # fixed at creation
    burn_value: int  # fixed at creation
    created_at: str
    attributes: dict = field(default_factory=dict)  # opaque to the registry
    minted_at: str | None = None
    burned_at: str | None = None
    gifted_to_account_id: int | None = None
    gifted_at: str | None = None


@dataclass(frozen=True)
class PoolStats:
    total_tokens: int
    target_tokens: int
    progress_percent: float
    contributor_count: int
    distribution_round: int = 1
    today_burned: int = 0
    top_contributor_username: str | None = None
    top_contributor_tokens: int = 0
    # Populated only when stats are requested for a specific account.
    contributed_tokens: int = 0
    rank: int | None = None
    # Rank after one more burn of projected_burn tokens; None without a rank.
    projected_rank_after_burn: int | None = None


@dataclass(frozen=True)
class Contributor:
    rank: int
    account_id: int
    username: str
    tokens_burned: int


@dataclass(frozen=True)
class Payout:
    """One top-contributor reward paid out of the pool."""

    rank: int
    account_id: int
    username: str
    tokens: int
