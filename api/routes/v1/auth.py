"""
api/routes/v1/auth.py -- Registration, login and session REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create account; sets session cookie; 201
  POST /api/v1/auth/login      -- password login; sets session cookie
  POST /api/v1/auth/logout     -- revokes the session, clears the cookie; 200
  GET  /api/v1/auth/me         -- current account (requires auth)
  POST /api/v1/auth/password   -- change password; all sessions revoked, new
                                  session issued (requires auth)

Security:
  POST /login and /register are rate-limited per IP (Settings).
  AuthService.login() performs timing equalization -- never inline a
      directory lookup + hasher.verify() here.
  Cache-Control: no-store on every response that carries a session id.

Route handlers are plain `def`: Argon2id and the DB calls block, so
FastAPI runs them in its threadpool instead of on the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    LoginRequest,
    MeResponse,
    PasswordChangeRequest,
    RegisterRequest,
    SessionResponse,
)
from auth.dependencies import (
    clear_session_cookie,
    get_current_account,
    session_id_from_request,
    set_session_cookie,
)
from auth.models import Account
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/register:  public, rate limited
# - POST /api/v1/auth/login:     public, rate limited
# - POST /api/v1/auth/logout:    public -- revoking an unknown session is a no-op
# - GET  /api/v1/auth/me:        requires auth (get_current_account)
# - POST /api/v1/auth/password:  requires auth (checked by AuthService)
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _register_limit() -> str:
    return get_settings().register_rate_limit


def _session_response(request: Request, account: Account, session_id: str, status_code: int = 200) -> JSONResponse:
    settings = request.app.state.container.settings
    resp = JSONResponse(
        status_code=status_code,
        content=SessionResponse(
            account=AccountResponse.from_account(account),
            session_id=session_id,
            expires_in=settings.session_ttl_seconds,
        ).model_dump(),
    )
    set_session_cookie(resp, session_id, max_age=settings.session_ttl_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


# @router must stay outermost: the route has to register the limited wrapper.
@router.post("/auth/register", response_model=SessionResponse, status_code=201)
@limiter.limit(_register_limit)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account with a zero balance and start its first session."""
    auth = request.app.state.container.auth
    account, session_id = auth.register(body.username, body.password, body.profile())
    return _session_response(request, account, session_id, status_code=201)


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(_login_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Unknown username and wrong password produce the same 401
    "invalid_credentials" error.
    """
    auth = request.app.state.container.auth
    account, session_id = auth.login(body.username, body.password)
    return _session_response(request, account, session_id)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie."""
    container = request.app.state.container
    container.auth.logout(session_id_from_request(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp, secure=container.settings.secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(current_account: Account = Depends(get_current_account)) -> MeResponse:
    """Return the authenticated account, including profile fields."""
    return MeResponse.from_account(current_account)


@router.post("/auth/password", response_model=SessionResponse)
def change_password(request: Request, body: PasswordChangeRequest) -> JSONResponse:
    """Replace the password. Every existing session ends; a new one is issued."""
    auth = request.app.state.container.auth
    session_id = auth.change_password(session_id_from_request(request), body.current_password, body.new_password)
    account = auth.current_account(session_id)
    return _session_response(request, account, session_id)
