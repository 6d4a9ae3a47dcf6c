"""
auth/csrf.py -- Double-submit CSRF guard.

State per cookie-bearing client:
  no _csrf cookie  -> issue(): mint 32 random bytes (hex), expires = now + TTL,
                      set the cookie and hand the raw token to the caller. This
                      is the only time the raw value goes anywhere but the cookie.
  cookie present   -> issue() passes through and returns the existing token.
  check()          -> the X-CSRF-Token header must equal the cookie's token and
                      the cookie must not be past its expiry.

Issue and check are independent (see auth/dependencies.py): a route can seed a
token without checking, or check without issuing.

Cookie format:
  The cookie value is {"token", "expires"} serialized with an itsdangerous
  URLSafeSerializer keyed by the server secret. The signature only protects the
  expiry from being extended client-side; the token itself is compared against
  the header. A cookie that fails to deserialize is treated as absent.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from itsdangerous import BadSignature, URLSafeSerializer
from starlette.requests import Request
from starlette.responses import Response

from auth.errors import CsrfTokenExpired, InvalidCsrfToken

logger = logging.getLogger("oni.auth.csrf")

CSRF_COOKIE = "_csrf"
CSRF_HEADER = "X-CSRF-Token"


@dataclass(frozen=True)
class CsrfContext:
    token: str
    expires: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CsrfGuard:
    """Issues and checks the _csrf cookie.

    now is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int,
        secure: bool = False,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._serializer = URLSafeSerializer(secret_key, salt="csrf-context")
        self.ttl_seconds = ttl_seconds
        self.secure = secure
        self._now = now

    # ------------------------------------------------------------------
    # Cookie codec
    # ------------------------------------------------------------------

    def encode(self, context: CsrfContext) -> str:
        return self._serializer.dumps({"token": context.token, "expires": context.expires.isoformat()})

    def decode(self, raw: str | None) -> CsrfContext | None:
        if not raw:
            return None
        try:
            data = self._serializer.loads(raw)
            return CsrfContext(token=data["token"], expires=datetime.fromisoformat(data["expires"]))
        except (BadSignature, KeyError, TypeError, ValueError):
            logger.info("Discarding unreadable CSRF cookie")
            return None

    def read(self, request: Request) -> CsrfContext | None:
        return self.decode(request.cookies.get(CSRF_COOKIE))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def issue(self, request: Request, response: Response) -> str:
        """Ensure the client holds a CSRF context and return its token.

        An existing cookie is never re-issued, even when it has expired -- the
        check stage discards expired cookies, after which the next issue()
        starts fresh.
        """
        existing = self.read(request)
        if existing is not None:
            return existing.token

        context = CsrfContext(
            token=secrets.token_hex(32),
            expires=self._now() + timedelta(seconds=self.ttl_seconds),
        )
        response.set_cookie(
            CSRF_COOKIE,
            value=self.encode(context),
            max_age=self.ttl_seconds,
            httponly=True,
            samesite="strict",
            secure=self.secure,
        )
        logger.debug("CSRF context issued")
        return context.token

    def check(self, request: Request) -> None:
        """Raise unless the header echoes a live cookie token. Silent on success."""
        context = self.read(request)
        header = request.headers.get(CSRF_HEADER, "")
        if context is None or not header or not secrets.compare_digest(header.encode(), context.token.encode()):
            raise InvalidCsrfToken()
        if self._now() > context.expires:
            # The handler for CsrfTokenExpired expires the cookie on the
            # error response.
            raise CsrfTokenExpired(CSRF_COOKIE)
