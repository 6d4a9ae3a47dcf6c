"""
tests/conftest.py -- Shared test fixtures for the onboarding service.

This module provides:
  - RecordingMailSender: a mail backend that keeps every rendered message
  - store / issuer / mailer / workflow / sessions: unit-level collaborators
  - api: a TestClient against the real app with a patched lifespan, plus
    helpers for logging in, fetching CSRF tokens and reading sent mail

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because store calls run in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread. Every
fixture uses a fresh uuid in the name so tests never share rows.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate the signing keys instead of raising ValueError.
"""

from __future__ import annotations

import os
import re
import secrets
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")

import pytest
from fastapi.testclient import TestClient

from api.main import app, configure_state
from auth.models import ROLE_ADMIN, STATUS_APPROVED, Account, Registration, WhitelistEntry
from auth.registration import RegistrationPolicy, RegistrationWorkflow
from auth.sessions import CookiePolicy, SessionOrchestrator
from auth.store import AccountStore
from auth.tokens import CredentialIssuer, IssuerConfig, hash_password
from core.config import get_settings
from mail.mailer import Mailer, RenderedMail

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"

_TOKEN_RE = re.compile(r"token=([A-Za-z0-9_.\-]+)")


# ---------------------------------------------------------------------------
# Mail fake
# ---------------------------------------------------------------------------


class RecordingMailSender:
    """Keeps every message instead of sending it. fail=True raises on send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[RenderedMail] = []
        self.fail = fail

    async def send(self, mail: RenderedMail) -> None:
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        self.sent.append(mail)

    def to(self, address: str) -> list[RenderedMail]:
        return [m for m in self.sent if m.to == address]

    def subjects(self) -> list[str]:
        return [m.subject for m in self.sent]


def extract_token(mail: RenderedMail) -> str:
    match = _TOKEN_RE.search(mail.text)
    assert match, f"no token link in mail: {mail.text!r}"
    return match.group(1)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store() -> AccountStore:
    return AccountStore(db_url=f"sqlite:///file:test_onboarding_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def registered_account(email: str, password: str, role: str = "user") -> Account:
    """An account that has already completed registration."""
    return Account(
        email=email,
        password_digest=hash_password(password),
        role=role,
        registration=Registration(date="2024-01-01T00:00:00+00:00", status=STATUS_APPROVED, registered=True),
    )


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = _make_test_store()
    yield s
    s.close()


@pytest.fixture
def issuer() -> CredentialIssuer:
    return CredentialIssuer(
        IssuerConfig(
            private_key=secrets.token_hex(32),
            public_key=secrets.token_hex(32),
            session_ttl=3600,
            registration_ttl=1800,
            reset_ttl=600,
        )
    )


@pytest.fixture
def sender() -> RecordingMailSender:
    return RecordingMailSender()


@pytest.fixture
def mailer(sender: RecordingMailSender) -> Mailer:
    return Mailer.from_settings(get_settings(), sender=sender)


@pytest.fixture
def workflow(store: AccountStore, issuer: CredentialIssuer, mailer: Mailer) -> RegistrationWorkflow:
    return RegistrationWorkflow(store, issuer, mailer, RegistrationPolicy.from_settings(get_settings()))


@pytest.fixture
def sessions(store: AccountStore, issuer: CredentialIssuer) -> SessionOrchestrator:
    return SessionOrchestrator(store, issuer, CookiePolicy(secure=False, domain=None))


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    store: AccountStore
    sender: RecordingMailSender
    admin: Account

    def call(self, fn, *args):
        """Run a coroutine function on the app's event loop."""
        return self.client.portal.call(fn, *args)

    def flush_mail(self) -> RecordingMailSender:
        self.call(app.state.mailer.drain)
        return self.sender

    def whitelist_domain(self, domain: str) -> None:
        self.call(self.store.add_whitelist_entry, WhitelistEntry(domain=domain))

    def login(self, email: str, password: str):
        self.client.cookies.clear()
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})

    def csrf_headers(self) -> dict[str, str]:
        resp = self.client.post("/api/v1/auth/request-csrftoken")
        assert resp.status_code == 200, resp.text
        return {"X-CSRF-Token": resp.json()["csrf"]}

    def login_admin(self) -> dict[str, str]:
        resp = self.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert resp.status_code == 200, resp.text
        return self.csrf_headers()


def _patch_lifespan(store: AccountStore, sender: RecordingMailSender):
    """Replace the real lifespan: same wiring, test store and recording mail."""

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        configure_state(app, settings, store, Mailer.from_settings(settings, sender=sender))
        yield
        await app.state.mailer.aclose()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext with a fresh store and a seeded, registered admin.

    follow_redirects=False so redirect locations can be asserted.
    """
    store = _make_test_store()
    sender = RecordingMailSender()
    app.router.lifespan_context = _patch_lifespan(store, sender)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        admin = client.portal.call(store.create, registered_account(ADMIN_EMAIL, ADMIN_PASSWORD, role=ROLE_ADMIN))
        yield ApiContext(client=client, store=store, sender=sender, admin=admin)

    store.close()
