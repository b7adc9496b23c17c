"""
api/routes/v1/collectibles.py -- Collectible listing and mint/burn/gift.

Routes:
  GET  /api/v1/collectibles?state=      -- caller's collectibles
  GET  /api/v1/collectibles/{id}        -- one collectible (owner only)
  POST /api/v1/collectibles/{id}/mint   -- spend mint_cost tokens
  POST /api/v1/collectibles/{id}/burn   -- destroy; burn value to beneficiary
  POST /api/v1/collectibles/{id}/gift   -- move ownership to another account

All routes require auth. Ownership and state are enforced by the registry,
which raises NotOwner (403), InvalidState (409), InsufficientBalance (409).

IDOR guard: GET /{id} answers 404 for collectibles owned by someone else,
so ids cannot be probed for existence.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import CollectibleActionResponse, CollectibleResponse, GiftRequest
from auth.dependencies import get_current_account
from auth.models import Account
from collectibles.models import Collectible, CollectibleState
from core.errors import CollectibleNotFound

router = APIRouter()


def _action_response(request: Request, account: Account, item: Collectible) -> CollectibleActionResponse:
    ledger = request.app.state.container.ledger
    return CollectibleActionResponse(
        collectible=CollectibleResponse.from_collectible(item),
        token_balance=ledger.balance(account.id),
    )


@router.get("/collectibles", response_model=list[CollectibleResponse])
def list_collectibles(
    request: Request,
    state: Optional[CollectibleState] = None,
    current_account: Account = Depends(get_current_account),
) -> list[CollectibleResponse]:
    """Return the caller's collectibles, optionally filtered by state."""
    registry = request.app.state.container.registry
    return [CollectibleResponse.from_collectible(c) for c in registry.list_for_owner(current_account.id, state)]


@router.get("/collectibles/{collectible_id}", response_model=CollectibleResponse)
def get_collectible(
    request: Request,
    collectible_id: int,
    current_account: Account = Depends(get_current_account),
) -> CollectibleResponse:
    registry = request.app.state.container.registry
    item = registry.get(collectible_id)
    if item.owner_account_id != current_account.id:
        raise CollectibleNotFound()
    return CollectibleResponse.from_collectible(item)


@router.post("/collectibles/{collectible_id}/mint", response_model=CollectibleActionResponse)
def mint(
    request: Request,
    collectible_id: int,
    current_account: Account = Depends(get_current_account),
) -> CollectibleActionResponse:
    """Mint an unminted collectible, debiting its mint cost."""
    registry = request.app.state.container.registry
    item = registry.mint(current_account.id, collectible_id)
    return _action_response(request, current_account, item)


@router.post("/collectibles/{collectible_id}/burn", response_model=CollectibleActionResponse)
def burn(
    request: Request,
    collectible_id: int,
    current_account: Account = Depends(get_current_account),
) -> CollectibleActionResponse:
    """Burn a minted collectible. Irreversible."""
    registry = request.app.state.container.registry
    item = registry.burn(current_account.id, collectible_id)
    return _action_response(request, current_account, item)


@router.post("/collectibles/{collectible_id}/gift", response_model=CollectibleActionResponse)
def gift(
    request: Request,
    collectible_id: int,
    body: GiftRequest,
    current_account: Account = Depends(get_current_account),
) -> CollectibleActionResponse:
    """Gift a minted collectible to another account."""
    registry = request.app.state.container.registry
    item = registry.gift(current_account.id, collectible_id, body.to_account_id)
    return _action_response(request, current_account, item)
