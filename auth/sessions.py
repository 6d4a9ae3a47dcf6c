"""
auth/sessions.py -- Session orchestrator: login, cookie issuance, logout.

Cookies set on a successful sign-in:
  oni-token         session token, private key. httpOnly so page scripts
                    cannot read it; the server verifies it on every request.
  oni-public-token  public-session token, public key. Readable by the client
                    (UI state: email, role, registered), samesite=strict and
                    scoped to COOKIE_DOMAIN when one is configured.

Both share the session TTL as max_age. Logout overwrites them, plus the CSRF
cookie, with empty values and a near-immediate expiry.

Security:
  [C1] login() runs a bcrypt check on every path, against a dummy digest when
       there is no usable stored digest, and raises the same
       InvalidCredentials for unknown email, wrong password, password-less
       (federated) account and archived account.
  [M5] Cache-Control: no-store on every response carrying credentials.

establish_session() builds and returns the Response itself instead of writing
to an injected one -- FastAPI drops cookies set on the injected Response when
the route returns its own, and the redirect variant must return its own.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from auth.csrf import CSRF_COOKIE
from auth.errors import InvalidCredentials
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import CredentialIssuer, TokenType, dummy_verify, verify_password
from core.config import Settings

logger = logging.getLogger("oni.auth.sessions")

SESSION_COOKIE = "oni-token"
PUBLIC_COOKIE = "oni-public-token"

# Logout cookies live this long before the browser drops them.
_LOGOUT_MAX_AGE = 10


@dataclass(frozen=True)
class CookiePolicy:
    secure: bool
    domain: str | None

    @classmethod
    def from_settings(cls, settings: Settings) -> CookiePolicy:
        return cls(secure=settings.secure_cookies, domain=settings.cookie_domain)


class SessionOrchestrator:
    def __init__(self, store: AccountStore, issuer: CredentialIssuer, cookies: CookiePolicy) -> None:
        self.store = store
        self.issuer = issuer
        self.cookies = cookies

    async def login(self, email: str, password: str) -> Account:
        """Verify email + password and return the account. [C1]

        Email is compared case-insensitively. Raises InvalidCredentials on
        every failure.
        """
        account = await self.store.find_by_email((email or "").strip().lower(), with_digest=True)

        if account is None or not account.password_digest:
            await run_in_threadpool(dummy_verify, password)
            logger.info("Login failed: unknown email or no local password")
            raise InvalidCredentials()

        ok = await run_in_threadpool(verify_password, password, account.password_digest)
        if not ok or not account.is_active:
            logger.info("Login failed for %s", account.email)
            raise InvalidCredentials()

        logger.info("Login succeeded for %s", account.email)
        return account

    def establish_session(self, account: Account, payload: dict[str, Any] | None = None) -> Response:
        """Mint both tokens, set both cookies, and build the response.

        payload["redirect"] set -> 302 to that URL, nothing else in the body.
        Otherwise -> 200 JSON {"success": true, **payload}.
        """
        payload = dict(payload or {})
        redirect = payload.pop("redirect", None)

        if redirect:
            response: Response = RedirectResponse(url=redirect, status_code=302)
        else:
            response = JSONResponse(content={"success": True, **payload})

        max_age = self.issuer.ttl(TokenType.SESSION)
        response.set_cookie(
            SESSION_COOKIE,
            value=self.issuer.issue_session_token(account),
            max_age=max_age,
            httponly=True,
            samesite="lax",
            secure=self.cookies.secure,
        )
        response.set_cookie(
            PUBLIC_COOKIE,
            value=self.issuer.issue_public_token(account),
            max_age=max_age,
            httponly=False,
            samesite="strict",
            secure=self.cookies.secure,
            domain=self.cookies.domain,
        )
        response.headers["Cache-Control"] = "no-store"  # [M5]
        logger.debug("Session established for %s", account.email)
        return response

    def logout(self) -> Response:
        """Expire every credential cookie. Always succeeds."""
        response = JSONResponse(content={"success": True, "data": {}})
        for name, domain in (
            (SESSION_COOKIE, None),
            (PUBLIC_COOKIE, self.cookies.domain),
            (CSRF_COOKIE, None),
        ):
            response.set_cookie(
                name,
                value="",
                max_age=_LOGOUT_MAX_AGE,
                httponly=name != PUBLIC_COOKIE,
                samesite="strict" if name != SESSION_COOKIE else "lax",
                secure=self.cookies.secure,
                domain=domain,
            )
        response.headers["Cache-Control"] = "no-store"
        return response

    @staticmethod
    def who_am_i(account: Account) -> dict[str, str]:
        return {"email": account.email, "role": account.role}
