"""
API request and response models for the moodledger REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are separate from the dataclasses in auth/models.py,
ledger/models.py and collectibles/models.py, which own the internal domain
representation. Route handlers map between the two.

Request models only check shape and hard size caps. Business validation
(username characters, password length, positive amounts) belongs to the
services, which raise InvalidInput -> 400 with the standard envelope.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from auth.models import Account
from collectibles.models import Collectible, Contributor, PoolStats
from ledger.models import LedgerEntry

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: str = Field(max_length=256)
    # Never strip or otherwise normalize passwords.
    password: str = Field(max_length=4096)
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    def profile(self) -> dict:
        return {
            k: v
            for k, v in (("email", self.email), ("first_name", self.first_name), ("last_name", self.last_name))
            if v is not None
        }


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(max_length=256)
    password: str = Field(max_length=4096)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(max_length=4096)
    new_password: str = Field(max_length=4096)


class AccountResponse(BaseModel):
    """Public account shape returned by every account-bearing endpoint."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    is_premium: bool
    token_balance: int

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            is_premium=account.is_premium,
            token_balance=account.token_balance,
        )


class MeResponse(AccountResponse):
    """Response for GET /api/v1/auth/me -- adds the profile fields."""

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "MeResponse":
        return cls(
            id=account.id,
            username=account.username,
            is_premium=account.is_premium,
            token_balance=account.token_balance,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            created_at=account.created_at,
        )


class SessionResponse(BaseModel):
    """Response for register, login and password change.

    session_id is also set as an httpOnly cookie; API clients that cannot
    keep cookies send it back as "Authorization: Bearer <session_id>".
    """

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    session_id: str
    expires_in: int


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class BalanceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int
    token_balance: int


class LedgerEntryRow(BaseModel):
    """One row in GET /api/v1/ledger/entries."""

    model_config = ConfigDict(frozen=True)

    id: int
    delta: int
    reason: str
    description: str
    transaction_id: str
    counterparty_id: Optional[int] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryRow":
        return cls(
            id=entry.id,
            delta=entry.delta,
            reason=entry.reason.value,
            description=entry.description,
            transaction_id=entry.transaction_id,
            counterparty_id=entry.counterparty_id,
            created_at=entry.created_at,
        )


class TransferRequest(BaseModel):
    """Request body for POST /api/v1/ledger/transfers."""

    model_config = ConfigDict(str_strip_whitespace=True)

    to_account_id: StrictInt
    amount: StrictInt
    description: str = Field(default="", max_length=500)


class TransferResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    token_balance: int


# ---------------------------------------------------------------------------
# Collectibles and pool
# ---------------------------------------------------------------------------


class CollectibleResponse(BaseModel):
    """Full collectible record."""

    model_config = ConfigDict(frozen=True)

    id: int
    owner_account_id: int
    name: str
    attributes: dict
    state: str
    mint_cost: int
    burn_value: int
    created_at: str
    minted_at: Optional[str] = None
    burned_at: Optional[str] = None
    gifted_to_account_id: Optional[int] = None
    gifted_at: Optional[str] = None

    @classmethod
    def from_collectible(cls, item: Collectible) -> "CollectibleResponse":
        return cls(
            id=item.id,
            owner_account_id=item.owner_account_id,
            name=item.name,
            attributes=item.attributes,
            state=item.state.value,
            mint_cost=item.mint_cost,
            burn_value=item.burn_value,
            created_at=item.created_at,
            minted_at=item.minted_at,
            burned_at=item.burned_at,
            gifted_to_account_id=item.gifted_to_account_id,
            gifted_at=item.gifted_at,
        )


class CollectibleActionResponse(BaseModel):
    """Response for mint/burn/gift: the updated record plus the caller's balance."""

    model_config = ConfigDict(frozen=True)

    collectible: CollectibleResponse
    token_balance: int


class GiftRequest(BaseModel):
    """Request body for POST /api/v1/collectibles/{id}/gift."""

    to_account_id: StrictInt


class PoolStatsResponse(BaseModel):
    """Response for GET /api/v1/pool."""

    model_config = ConfigDict(frozen=True)

    total_tokens: int
    target_tokens: int
    progress_percent: float
    contributor_count: int
    distribution_round: int
    today_burned: int
    top_contributor_username: Optional[str] = None
    top_contributor_tokens: int
    contributed_tokens: int
    rank: Optional[int] = None
    projected_rank_after_burn: Optional[int] = None

    @classmethod
    def from_stats(cls, stats: PoolStats) -> "PoolStatsResponse":
        return cls(
            total_tokens=stats.total_tokens,
            target_tokens=stats.target_tokens,
            progress_percent=stats.progress_percent,
            contributor_count=stats.contributor_count,
            distribution_round=stats.distribution_round,
            today_burned=stats.today_burned,
            top_contributor_username=stats.top_contributor_username,
            top_contributor_tokens=stats.top_contributor_tokens,
            contributed_tokens=stats.contributed_tokens,
            rank=stats.rank,
            projected_rank_after_burn=stats.projected_rank_after_burn,
        )


class ContributorRow(BaseModel):
    """One row in GET /api/v1/pool/contributors."""

    model_config = ConfigDict(frozen=True)

    rank: int
    account_id: int
    username: str
    tokens_burned: int

    @classmethod
    def from_contributor(cls, c: Contributor) -> "ContributorRow":
        return cls(rank=c.rank, account_id=c.account_id, username=c.username, tokens_burned=c.tokens_burned)
