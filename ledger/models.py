"""
ledger/models.py -- Domain dataclasses for the token ledger.

Pattern: Data class (pure data container, zero logic).

Layer rule: no imports from api/ or collectibles/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LedgerReason(str, Enum):
    """Why a balance changed. Stored verbatim in ledger_entries.reason."""

    # Rewards granted by activity features (journal, chat, challenges, ...).
    journal_entry = "journal_entry"
    chat_participation = "chat_participation"
    emotion_update = "emotion_update"
    daily_login = "daily_login"
    help_others = "help_others"
    challenge_completion = "challenge_completion"
    badge_earned = "badge_earned"
    game_completion = "game_completion"
    milestone_share = "milestone_share"
    # Economy movements.
    token_transfer = "token_transfer"
    collectible_mint = "collectible_mint"
    collectible_burn = "collectible_burn"
    pool_contribution = "pool_contribution"
    pool_distribution = "pool_distribution"
    admin_grant = "admin_grant"


@dataclass(frozen=True)
class LedgerEntry:
    """One append-only balance change.

    delta is signed and never zero. transaction_id groups the legs of a
    single movement (both sides of a transfer, or a burn's credit);
    counterparty_id names the other account of that movement, if any.
    """

    id: int
    account_id: int
    delta: int
    reason: LedgerReason
    description: str
    transaction_id: str
    created_at: str
    counterparty_id: int | None = None
