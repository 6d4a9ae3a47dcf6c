"""Unit tests for auth/csrf.py -- the double-submit guard.

Covers:
- issue() sets an httpOnly, samesite=strict cookie and returns its token
- issue() passes an existing cookie through without re-issuing
- check() fails with a missing header, a wrong header, a forged cookie,
  and after expiry; passes only on a matching, live token
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from starlette.requests import Request
from starlette.responses import Response

from auth.csrf import CSRF_COOKIE, CSRF_HEADER, CsrfContext, CsrfGuard
from auth.errors import CsrfTokenExpired, Forbidden, InvalidCsrfToken

SECRET = "csrf-test-secret-0123456789abcdef"


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _request(cookie: str | None = None, header: str | None = None) -> Request:
    headers = []
    if cookie is not None:
        headers.append((b"cookie", f"{CSRF_COOKIE}={cookie}".encode()))
    if header is not None:
        headers.append((CSRF_HEADER.lower().encode(), header.encode()))
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers})


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def guard(clock: Clock) -> CsrfGuard:
    return CsrfGuard(SECRET, ttl_seconds=60, now=clock)


def _issued(guard: CsrfGuard) -> tuple[str, str]:
    """Issue on a cookie-less request; return (raw token, cookie value)."""
    response = Response()
    token = guard.issue(_request(), response)
    set_cookie = response.headers["set-cookie"]
    cookie_value = set_cookie.split(";", 1)[0].split("=", 1)[1]
    return token, cookie_value


class TestIssue:
    def test_sets_cookie_with_flags(self, guard: CsrfGuard) -> None:
        response = Response()
        token = guard.issue(_request(), response)
        set_cookie = response.headers["set-cookie"].lower()
        assert len(token) == 64
        assert set_cookie.startswith(f"{CSRF_COOKIE}=")
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie
        assert "max-age=60" in set_cookie

    def test_existing_cookie_passes_through(self, guard: CsrfGuard) -> None:
        token, cookie = _issued(guard)
        response = Response()
        assert guard.issue(_request(cookie=cookie), response) == token
        assert "set-cookie" not in response.headers

    def test_expiry_is_now_plus_ttl(self, guard: CsrfGuard, clock: Clock) -> None:
        _token, cookie = _issued(guard)
        context = guard.decode(cookie)
        assert context is not None
        assert context.expires == clock.now + timedelta(seconds=60)


class TestCheck:
    def test_matching_header_passes(self, guard: CsrfGuard) -> None:
        token, cookie = _issued(guard)
        guard.check(_request(cookie=cookie, header=token))

    def test_passes_at_exact_expiry(self, guard: CsrfGuard, clock: Clock) -> None:
        token, cookie = _issued(guard)
        clock.now += timedelta(seconds=60)
        guard.check(_request(cookie=cookie, header=token))

    def test_missing_header(self, guard: CsrfGuard) -> None:
        _token, cookie = _issued(guard)
        with pytest.raises(InvalidCsrfToken):
            guard.check(_request(cookie=cookie))

    def test_wrong_header(self, guard: CsrfGuard) -> None:
        _token, cookie = _issued(guard)
        with pytest.raises(InvalidCsrfToken) as exc_info:
            guard.check(_request(cookie=cookie, header="0" * 64))
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Invalid CSRF token"

    def test_missing_cookie(self, guard: CsrfGuard) -> None:
        with pytest.raises(InvalidCsrfToken):
            guard.check(_request(header="0" * 64))

    def test_forged_cookie_extending_expiry(self, guard: CsrfGuard, clock: Clock) -> None:
        """A cookie signed with another key is treated as absent."""
        token, _cookie = _issued(guard)
        forger = CsrfGuard("some-other-secret-0123456789abcdef", ttl_seconds=60, now=clock)
        forged = forger.encode(CsrfContext(token=token, expires=clock.now + timedelta(days=365)))
        with pytest.raises(InvalidCsrfToken):
            guard.check(_request(cookie=forged, header=token))

    def test_expired(self, guard: CsrfGuard, clock: Clock) -> None:
        token, cookie = _issued(guard)
        clock.now += timedelta(seconds=61)
        with pytest.raises(CsrfTokenExpired) as exc_info:
            guard.check(_request(cookie=cookie, header=token))
        assert isinstance(exc_info.value, Forbidden)
        assert exc_info.value.message == "CSRF token has expired"
        assert exc_info.value.clear_cookies == (CSRF_COOKIE,)
