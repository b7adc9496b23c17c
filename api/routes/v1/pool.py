"""
api/routes/v1/pool.py -- Community pool statistics.

Routes:
  GET /api/v1/pool               -- totals, progress, caller's contribution
  GET /api/v1/pool/contributors  -- leaderboard of burners

Both require auth; neither mutates anything.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import ContributorRow, PoolStatsResponse
from auth.dependencies import get_current_account
from auth.models import Account

router = APIRouter()


@router.get("/pool", response_model=PoolStatsResponse)
def pool_stats(request: Request, current_account: Account = Depends(get_current_account)) -> PoolStatsResponse:
    pool = request.app.state.container.pool
    return PoolStatsResponse.from_stats(pool.stats(current_account.id))


@router.get("/pool/contributors", response_model=list[ContributorRow])
def top_contributors(
    request: Request,
    limit: int = Query(default=50, ge=1, le=100),
    current_account: Account = Depends(get_current_account),
) -> list[ContributorRow]:
    pool = request.app.state.container.pool
    return [ContributorRow.from_contributor(c) for c in pool.top_contributors(limit)]
