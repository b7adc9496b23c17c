"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Two transports are checked in priority order:
  1. "session_id" cookie -- set by register/login (httpOnly, samesite=lax).
  2. Authorization: Bearer <session_id> header -- API clients without a
     cookie jar.

Both converge on AuthService.current_account(), which raises
AuthenticationRequired for a missing, unknown, expired or revoked session.
api/main.py maps that to 401 with the standard error envelope.

Layer rule: no imports from api/, ledger/ or collectibles/.
  auth/dependencies.py may import from fastapi (for Request/Response)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request, Response

from auth.models import Account

SESSION_COOKIE = "session_id"


def session_id_from_request(request: Request) -> str | None:
    """Return the raw session id from the cookie or Bearer header, if any."""
    session_id: str | None = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            session_id = auth_header[7:].strip()
    return session_id or None


def get_current_account(request: Request) -> Account:
    """Require a live session. Raises AuthenticationRequired otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    container = request.app.state.container
    return container.auth.current_account(session_id_from_request(request))


def set_session_cookie(response: Response, session_id: str, max_age: int, secure: bool) -> None:
    """Write the session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: matches the session TTL so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_session_cookie(response: Response, secure: bool) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax", secure=secure)
