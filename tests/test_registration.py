"""Unit tests for auth/registration.py -- the registration and reset state machines.

Covers:
- whitelisted registration goes straight to PENDING with a token and a
  confirmation email; confirm() completes it and clears the token
- non-whitelisted registration mints nothing, mails the user and the admin;
  approval then runs the same token sequence
- approve is idempotent once registered (same message, no new mint, no mail)
- registration and reset tokens are single use
- confirm rejects wrong-type tokens, denied accounts and superseded links
- deny, check_user_registration, request_reset for unknown and unregistered
  accounts
- password length is counted in bytes; whitelist domains are normalized
- a failing mail backend never fails the workflow call
- federated sign-in: lookup by subject, link by email, create
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import DependencyFailure, DuplicateEmail, DuplicateExternalId, NotFound, TokenInvalid, ValidationError
from auth.models import STATUS_APPROVED, STATUS_DENIED, STATUS_PENDING, WhitelistEntry
from auth.registration import (
    ALREADY_REGISTERED,
    APPROVED,
    PASSWORD_TOO_LONG,
    RegistrationPolicy,
    RegistrationWorkflow,
    normalize_domain,
)
from auth.store import AccountStore
from auth.tokens import CredentialIssuer, verify_password
from core.config import get_settings
from mail.mailer import Mailer, SUBJECTS

from conftest import RecordingMailSender, extract_token, registered_account

ADMIN = get_settings().admin_email


@pytest.fixture
async def whitelisted_store(store: AccountStore) -> AccountStore:
    await store.add_whitelist_entry(WhitelistEntry(domain="b.com"))
    return store


class TestCreateUser:
    async def test_hashes_password(self, workflow: RegistrationWorkflow, store: AccountStore) -> None:
        account = await workflow.create_user("A@B.com", "secret1")
        stored = await store.find_by_email("a@b.com", with_digest=True)
        assert account.email == "a@b.com"
        assert stored.password_digest != "secret1"
        assert verify_password("secret1", stored.password_digest)
        assert stored.registration.status is None
        assert stored.registration.registered is False

    async def test_duplicate_email(self, workflow: RegistrationWorkflow) -> None:
        await workflow.create_user("a@b.com", "secret1")
        with pytest.raises(DuplicateEmail):
            await workflow.create_user("A@b.com", "secret2")

    @pytest.mark.parametrize(("email", "password"), [("not-an-email", "secret1"), ("a@b.com", "short")])
    async def test_validation(self, workflow: RegistrationWorkflow, email: str, password: str) -> None:
        with pytest.raises(ValidationError):
            await workflow.create_user(email, password)

    async def test_password_limit_counts_bytes(self, workflow: RegistrationWorkflow) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await workflow.create_user("mb@b.com", "\u00e9" * 72)
        assert exc_info.value.message == PASSWORD_TOO_LONG
        await workflow.create_user("mb@b.com", "\u00e9" * 36)

    async def test_store_outage(
        self, workflow: RegistrationWorkflow, store: AccountStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_create(account):
            raise OperationalError("INSERT INTO accounts", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store, "create", broken_create)
        with pytest.raises(DependencyFailure) as exc_info:
            await workflow.create_user("a@b.com", "secret1")
        assert exc_info.value.status_code == 500


class TestWhitelistedRegistration:
    async def test_register_then_confirm(
        self,
        workflow: RegistrationWorkflow,
        whitelisted_store: AccountStore,
        mailer: Mailer,
        sender: RecordingMailSender,
    ) -> None:
        """a@b.com with b.com whitelisted: pending with a token, then registered."""
        outcome = await workflow.register("a@b.com", "secret1")
        assert outcome.whitelisted is True
        assert outcome.token
        assert outcome.account.registration.status == STATUS_PENDING
        assert outcome.account.registration.token == outcome.token
        assert outcome.account.registration.registered is False

        await mailer.drain()
        [mail] = sender.to("a@b.com")
        assert mail.subject == SUBJECTS["registration_confirm"]
        assert extract_token(mail) == outcome.token

        confirmed = await workflow.confirm_registration(outcome.token)
        assert confirmed.registration.registered is True
        assert confirmed.registration.status == STATUS_APPROVED
        assert confirmed.registration.token is None
        assert confirmed.registration.date
        assert confirmed.is_registered

        await mailer.drain()
        assert SUBJECTS["registration_complete"] in [m.subject for m in sender.to("a@b.com")]

    async def test_confirm_is_single_use(self, workflow: RegistrationWorkflow, whitelisted_store) -> None:
        outcome = await workflow.register("a@b.com", "secret1")
        await workflow.confirm_registration(outcome.token)
        with pytest.raises(TokenInvalid):
            await workflow.confirm_registration(outcome.token)

    async def test_subdomain_is_whitelisted(self, workflow: RegistrationWorkflow, whitelisted_store) -> None:
        outcome = await workflow.register("a@mail.b.com", "secret1")
        assert outcome.whitelisted is True


class TestAdminApproval:
    async def test_unlisted_registration_waits_for_admin(
        self,
        workflow: RegistrationWorkflow,
        store: AccountStore,
        mailer: Mailer,
        sender: RecordingMailSender,
    ) -> None:
        """x@unlisted.com: no token, two emails, then approve -> pending -> confirm."""
        outcome = await workflow.register("x@unlisted.com", "secret1")
        assert outcome.whitelisted is False
        assert outcome.token is None

        stored = await store.find_by_email("x@unlisted.com")
        assert stored.registration.token is None
        assert stored.registration.status is None

        await mailer.drain()
        assert [m.subject for m in sender.to("x@unlisted.com")] == [SUBJECTS["registration_pending"]]
        assert [m.subject for m in sender.to(ADMIN)] == [SUBJECTS["registration_request_admin"]]

        result = await workflow.register_approve("x@unlisted.com")
        assert result.message == APPROVED
        assert result.token
        assert result.account.registration.status == STATUS_PENDING

        confirmed = await workflow.confirm_registration(result.token)
        assert confirmed.is_registered

    async def test_approve_is_idempotent_once_registered(
        self,
        workflow: RegistrationWorkflow,
        mailer: Mailer,
        sender: RecordingMailSender,
    ) -> None:
        await workflow.register("x@unlisted.com", "secret1")
        result = await workflow.register_approve("x@unlisted.com")
        await workflow.confirm_registration(result.token)
        await mailer.drain()
        sent_before = len(sender.sent)

        again = await workflow.register_approve("x@unlisted.com")
        twice = await workflow.register_approve("x@unlisted.com")
        await mailer.drain()

        assert again.message == twice.message == ALREADY_REGISTERED
        assert again.token is None and twice.token is None
        assert len(sender.sent) == sent_before

    async def test_reapprove_supersedes_previous_link(self, workflow: RegistrationWorkflow) -> None:
        """Approving a pending account again re-mints; only the newest link works."""
        await workflow.register("x@unlisted.com", "secret1")
        first = await workflow.register_approve("x@unlisted.com")
        second = await workflow.register_approve("x@unlisted.com")
        assert first.token != second.token

        with pytest.raises(TokenInvalid):
            await workflow.confirm_registration(first.token)
        assert (await workflow.confirm_registration(second.token)).is_registered

    async def test_approve_unknown_email(self, workflow: RegistrationWorkflow) -> None:
        with pytest.raises(NotFound):
            await workflow.register_approve("nobody@nowhere.com")


class TestDeny:
    async def test_deny_clears_link(self, workflow: RegistrationWorkflow) -> None:
        await workflow.register("x@unlisted.com", "secret1")
        approved = await workflow.register_approve("x@unlisted.com")

        denied = await workflow.register_deny("x@unlisted.com")
        assert denied.registration.status == STATUS_DENIED
        assert denied.registration.token is None
        with pytest.raises(TokenInvalid):
            await workflow.confirm_registration(approved.token)

    async def test_cannot_deny_registered(self, workflow: RegistrationWorkflow, whitelisted_store) -> None:
        outcome = await workflow.register("a@b.com", "secret1")
        await workflow.confirm_registration(outcome.token)
        with pytest.raises(ValidationError):
            await workflow.register_deny("a@b.com")


class TestConfirmFailures:
    async def test_reset_token_is_not_a_registration_token(
        self, workflow: RegistrationWorkflow, issuer: CredentialIssuer, whitelisted_store
    ) -> None:
        outcome = await workflow.register("a@b.com", "secret1")
        with pytest.raises(TokenInvalid):
            await workflow.confirm_registration(issuer.issue_reset_token(outcome.account))

    async def test_unstored_token(self, workflow: RegistrationWorkflow, issuer: CredentialIssuer, whitelisted_store) -> None:
        """A validly signed token that was never persisted resolves to no account."""
        outcome = await workflow.register("a@b.com", "secret1")
        with pytest.raises(TokenInvalid):
            await workflow.confirm_registration(issuer.issue_registration_token(outcome.account))

    async def test_garbage(self, workflow: RegistrationWorkflow) -> None:
        with pytest.raises(TokenInvalid):
            await workflow.confirm_registration("garbage")


class TestCheckRegistration:
    async def test_states(self, workflow: RegistrationWorkflow, whitelisted_store) -> None:
        outcome = await workflow.register("a@b.com", "secret1")
        assert await workflow.check_user_registration("a@b.com") is False
        await workflow.confirm_registration(outcome.token)
        assert await workflow.check_user_registration("A@B.com") is True

    async def test_unknown(self, workflow: RegistrationWorkflow) -> None:
        with pytest.raises(NotFound):
            await workflow.check_user_registration("nobody@nowhere.com")


class TestPasswordReset:
    async def test_reset_flow(
        self,
        workflow: RegistrationWorkflow,
        store: AccountStore,
        mailer: Mailer,
        sender: RecordingMailSender,
    ) -> None:
        await store.create(registered_account("a@b.com", "secret1"))
        token = await workflow.request_reset("a@b.com")
        assert token

        await mailer.drain()
        [mail] = sender.to("a@b.com")
        assert mail.subject == SUBJECTS["reset_password"]
        assert extract_token(mail) == token

        account = await workflow.confirm_reset(token)
        assert account.reset.token is None
        with pytest.raises(TokenInvalid):
            await workflow.confirm_reset(token)

        await workflow.update_password(account, "newsecret")
        stored = await store.find_by_email("a@b.com", with_digest=True)
        assert verify_password("newsecret", stored.password_digest)
        assert not verify_password("secret1", stored.password_digest)

    async def test_unknown_email_is_silent(
        self, workflow: RegistrationWorkflow, mailer: Mailer, sender: RecordingMailSender
    ) -> None:
        assert await workflow.request_reset("nobody@nowhere.com") is None
        await mailer.drain()
        assert sender.sent == []

    async def test_unregistered_account_gets_no_link(
        self, workflow: RegistrationWorkflow, store: AccountStore, mailer: Mailer, sender: RecordingMailSender
    ) -> None:
        """A pending account could not use a reset session, so no link is spent on it."""
        await workflow.register("p@unlisted.com", "secret1")
        await mailer.drain()
        sender.sent.clear()

        assert await workflow.request_reset("p@unlisted.com") is None
        await mailer.drain()
        assert sender.sent == []
        stored = await store.find_by_email("p@unlisted.com")
        assert stored.reset.token is None

    async def test_expired_reset_record(self, workflow: RegistrationWorkflow, store: AccountStore) -> None:
        account = await store.create(registered_account("a@b.com", "secret1"))
        token = await workflow.request_reset("a@b.com")
        await store.update_fields({"id": account.id}, {"reset.expires": "2000-01-01T00:00:00+00:00"})
        with pytest.raises(TokenInvalid):
            await workflow.confirm_reset(token)

    async def test_update_password_enforces_policy(self, workflow: RegistrationWorkflow) -> None:
        account = await workflow.create_user("a@b.com", "secret1")
        with pytest.raises(ValidationError):
            await workflow.update_password(account, "123")

    async def test_multibyte_password_over_bcrypt_limit(self, workflow: RegistrationWorkflow) -> None:
        account = await workflow.create_user("a@b.com", "secret1")
        with pytest.raises(ValidationError):
            await workflow.update_password(account, "\u00e9" * 72)


class TestMailFailure:
    async def test_state_change_survives_mail_outage(
        self, store: AccountStore, issuer: CredentialIssuer, whitelisted_store
    ) -> None:
        failing = RecordingMailSender(fail=True)
        mailer = Mailer.from_settings(get_settings(), sender=failing)
        workflow = RegistrationWorkflow(store, issuer, mailer, RegistrationPolicy.from_settings(get_settings()))

        outcome = await workflow.register("a@b.com", "secret1")
        await mailer.drain()

        assert outcome.token
        stored = await store.find_by_email("a@b.com")
        assert stored.registration.status == STATUS_PENDING
        assert stored.registration.token == outcome.token
        assert mailer.pending == 0

    async def test_unknown_kind_is_a_programming_error(self, mailer: Mailer) -> None:
        with pytest.raises(KeyError):
            mailer.dispatch("a@b.com", "no_such_template", {})


class TestExternalIdentity:
    async def test_creates_account(self, workflow: RegistrationWorkflow, whitelisted_store) -> None:
        account, created = await workflow.register_external("g@b.com", "sub-1")
        assert created is True
        assert account.external_id == "sub-1"
        assert account.password_digest is None
        assert account.registration.status == STATUS_PENDING

        again, created_again = await workflow.register_external("g@b.com", "sub-1")
        assert created_again is False
        assert again.id == account.id

    async def test_links_existing_password_account(self, workflow: RegistrationWorkflow) -> None:
        existing = await workflow.create_user("a@unlisted.com", "secret1")
        account, created = await workflow.register_external("A@unlisted.com", "sub-1")
        assert created is False
        assert account.id == existing.id
        assert account.external_id == "sub-1"

    async def test_email_linked_to_other_subject(self, workflow: RegistrationWorkflow) -> None:
        await workflow.register_external("a@unlisted.com", "sub-1")
        with pytest.raises(DuplicateExternalId):
            await workflow.register_external("a@unlisted.com", "sub-2")


class TestNormalizeDomain:
    @pytest.mark.parametrize(("raw", "expected"), [("B.com", "b.com"), (" @b.com ", "b.com"), ("x.b.co.uk", "x.b.co.uk")])
    def test_accepts_hostnames(self, raw: str, expected: str) -> None:
        assert normalize_domain(raw) == expected

    @pytest.mark.parametrize("raw", ["b.com/", "a@b.com", "com", "-b.com", "b..com", ""])
    def test_rejects_non_hostnames(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            normalize_domain(raw)
