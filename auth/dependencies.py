"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and CSRF.

Two places a session token is accepted, checked in priority order:
  1. Session cookie ("oni-token") -- set by establish_session().
  2. Authorization: Bearer <token> header -- API clients.

Only session-type tokens signed with the private key are accepted. The account
is re-read from the store on every request, so archiving an account or
changing its role takes effect on the next request without waiting for the
token to expire.

get_current_account() raises 401 if unauthenticated, 403 if the account has
not completed registration.
require_admin() wraps get_current_account() and raises 403 if not admin. The
role is taken from the store, never from token claims.

csrf_issue() and csrf_check() are independent: a route lists whichever it
needs. Issuing never checks, checking never issues.

Layer rule: no imports from api/ or mail/.
  auth/dependencies.py may import from fastapi (for Depends/Request/Response)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request, Response

from auth.errors import Forbidden, TokenInvalid, Unauthorized
from auth.models import ROLE_ADMIN, Account
from auth.sessions import SESSION_COOKIE
from auth.tokens import TokenType

logger = logging.getLogger("oni.auth.dependencies")


def _extract_token(request: Request) -> str | None:
    # 1. Cookie
    token: str | None = request.cookies.get(SESSION_COOKIE)

    # 2. Authorization: Bearer header
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


async def get_current_account(request: Request) -> Account:
    """Require an authenticated, registered, active account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise Unauthorized()

    try:
        claims = request.app.state.issuer.verify_as(token, TokenType.SESSION)
    except TokenInvalid as exc:
        raise Unauthorized() from exc

    account = await request.app.state.store.find_by_id(claims["id"])
    if account is None or not account.is_active:
        logger.info("Session token for missing or archived account rejected")
        raise Unauthorized()
    if not account.is_registered:
        raise Forbidden("Registration is not complete")
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Require admin role. 401 if unauthenticated, 403 if not admin."""
    if account.role != ROLE_ADMIN:
        raise Forbidden("Admin access required")
    return account


def csrf_issue(request: Request, response: Response) -> str:
    """Seed the CSRF cookie on the response if absent; return the token."""
    return request.app.state.csrf.issue(request, response)


def csrf_check(request: Request) -> None:
    """Reject the request unless X-CSRF-Token matches a live CSRF cookie."""
    request.app.state.csrf.check(request)
