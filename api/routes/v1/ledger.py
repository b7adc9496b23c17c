"""
api/routes/v1/ledger.py -- Token balance, history and transfer endpoints.

Routes:
  GET  /api/v1/ledger/balance     -- caller's current balance
  GET  /api/v1/ledger/entries     -- caller's ledger entries, newest first
  POST /api/v1/ledger/transfers   -- send tokens to another account; 201

All routes require auth. A caller can only read or spend its own balance:
the account id always comes from the session, never from the request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import BalanceResponse, LedgerEntryRow, TransferRequest, TransferResponse
from auth.dependencies import get_current_account
from auth.models import Account
from core.errors import InvalidTarget

router = APIRouter()


@router.get("/ledger/balance", response_model=BalanceResponse)
def balance(request: Request, current_account: Account = Depends(get_current_account)) -> BalanceResponse:
    """Return the caller's balance as of this request."""
    ledger = request.app.state.container.ledger
    return BalanceResponse(account_id=current_account.id, token_balance=ledger.balance(current_account.id))


@router.get("/ledger/entries", response_model=list[LedgerEntryRow])
def entries(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_account: Account = Depends(get_current_account),
) -> list[LedgerEntryRow]:
    """Return the caller's ledger history, newest first."""
    ledger = request.app.state.container.ledger
    return [LedgerEntryRow.from_entry(e) for e in ledger.entries(current_account.id, limit=limit, offset=offset)]


@router.post("/ledger/transfers", response_model=TransferResponse, status_code=201)
def transfer(
    request: Request,
    body: TransferRequest,
    current_account: Account = Depends(get_current_account),
) -> TransferResponse:
    """Move tokens from the caller to another regular account."""
    container = request.app.state.container
    recipient = container.directory.get(body.to_account_id)
    if recipient is None or recipient.is_system:
        raise InvalidTarget()
    transaction_id = container.ledger.transfer(current_account.id, body.to_account_id, body.amount, body.description)
    return TransferResponse(
        transaction_id=transaction_id,
        token_balance=container.ledger.balance(current_account.id),
    )
