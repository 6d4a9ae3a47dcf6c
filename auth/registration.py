"""
auth/registration.py -- Registration lifecycle and password-reset workflow.

States per account (auth/models.Registration):

  UNREGISTERED --register_user / register_approve--> PENDING
  PENDING      --confirm_registration-------------> REGISTERED (terminal)
  any non-registered state --register_deny--------> DENIED

  UNREGISTERED  status None,      registered False, token None
  PENDING       status pending,   registered False, token set
  REGISTERED    status approved,  registered True,  token None, date set
  DENIED        status denied,    registered False, token None

Two ways into PENDING:
  whitelisted email/domain -> register() calls register_user() right away.
  anything else            -> register() only sends the "pending review" and
                              "new request" emails; an admin later calls
                              register_approve(), which runs the same
                              token-mint sequence.

Ordering [R1]: the token is persisted before the confirmation email is
dispatched. Emails go out through Mailer.dispatch() and their outcome never
affects the result of a workflow call.

Single use [R2]: confirm_registration() and confirm_reset() consume the stored
token with a conditional update whose selector includes the token itself. Two
concurrent confirmations of one link cannot both succeed.

Every token failure -- bad signature, expiry, wrong type, no stored match,
wrong state, lost race -- raises the same TokenInvalid.

Layer rule: no imports from api/. Imports from core/ and mail/ are allowed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from auth.errors import DependencyFailure, DuplicateEmail, DuplicateExternalId, NotFound, TokenInvalid, ValidationError
from auth.models import STATUS_APPROVED, STATUS_DENIED, STATUS_PENDING, Account
from auth.store import AccountStore
from auth.tokens import CredentialIssuer, TokenType, hash_password
from core.config import Settings
from mail.mailer import Mailer

logger = logging.getLogger("oni.auth.registration")

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_DOMAIN_PATTERN = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}$")

# bcrypt refuses input longer than 72 bytes.
MAX_PASSWORD_BYTES = 72
PASSWORD_TOO_LONG = f"Password must be at most {MAX_PASSWORD_BYTES} bytes"

ALREADY_REGISTERED = "User is already registered"
APPROVED = "Registration approved, confirmation email sent"


def normalize_email(email: str) -> str:
    """Strip and lower-case an email, raising ValidationError if it is malformed."""
    email = (email or "").strip().lower()
    if not _EMAIL_PATTERN.match(email):
        raise ValidationError("Please add a valid email")
    return email


def normalize_domain(domain: str) -> str:
    """Lower-case a whitelist domain, dropping a leading @. Raises ValidationError if not a hostname."""
    domain = (domain or "").strip().lower().removeprefix("@")
    if not _DOMAIN_PATTERN.match(domain):
        raise ValidationError("Please add a valid domain")
    return domain


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RegistrationPolicy:
    """Immutable knobs the workflow needs from configuration."""

    min_password_length: int
    admin_email: str
    confirm_url: str
    reset_url: str

    @classmethod
    def from_settings(cls, settings: Settings) -> RegistrationPolicy:
        return cls(
            min_password_length=settings.min_password_length,
            admin_email=settings.admin_email,
            confirm_url=f"{settings.backend_url}/api/v1/auth/register/confirm",
            reset_url=f"{settings.backend_url}/api/v1/auth/resetpassword",
        )


@dataclass(frozen=True)
class RegistrationOutcome:
    account: Account
    whitelisted: bool
    token: str | None = None


@dataclass(frozen=True)
class ApprovalResult:
    message: str
    account: Account
    token: str | None = None


class RegistrationWorkflow:
    """Drives accounts through the registration and reset state machines."""

    def __init__(
        self,
        store: AccountStore,
        issuer: CredentialIssuer,
        mailer: Mailer,
        policy: RegistrationPolicy,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.mailer = mailer
        self.policy = policy

    # ------------------------------------------------------------------
    # Account creation
    # ------------------------------------------------------------------

    def validate_password(self, password: str) -> None:
        if not password or len(password) < self.policy.min_password_length:
            raise ValidationError(f"Password must be at least {self.policy.min_password_length} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(PASSWORD_TOO_LONG)

    async def create_user(self, email: str, password: str) -> Account:
        """Persist a new account with a hashed password and an empty registration.

        Does not decide the registration outcome -- see register().
        """
        email = normalize_email(email)
        self.validate_password(password)
        if await self.store.find_by_email(email) is not None:
            raise DuplicateEmail()

        digest = await run_in_threadpool(hash_password, password)
        try:
            account = await self.store.create(Account(email=email, password_digest=digest))
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise DuplicateEmail() from exc
        except SQLAlchemyError as exc:
            logger.error("Account store unavailable creating %s: %s", email, type(exc).__name__)
            raise DependencyFailure() from exc
        logger.info("Account created for %s", email)
        return account

    async def check_whitelist(self, email: str) -> bool:
        return await self.store.is_whitelisted(normalize_email(email))

    async def register(self, email: str, password: str) -> RegistrationOutcome:
        """Create the account, then take the whitelist or the admin-review branch."""
        account = await self.create_user(email, password)
        return await self._route_new_account(account)

    async def _route_new_account(self, account: Account) -> RegistrationOutcome:
        if await self.check_whitelist(account.email):
            token = await self.register_user(account)
            fresh = await self.store.find_by_id(account.id)
            return RegistrationOutcome(account=fresh or account, whitelisted=True, token=token)

        self.notify_pending_review(account)
        return RegistrationOutcome(account=account, whitelisted=False)

    # ------------------------------------------------------------------
    # UNREGISTERED / DENIED -> PENDING
    # ------------------------------------------------------------------

    async def register_user(self, account: Account) -> str | None:
        """Mint a registration token, move the account to PENDING, email the link.

        Returns the token, or None if the account became registered between
        the caller's read and this write (nothing is sent in that case).
        """
        token = self.issuer.issue_registration_token(account)
        updated = await self.store.update_fields(
            {"id": account.id, "registration.registered": False},
            {
                "registration.token": token,
                "registration.status": STATUS_PENDING,
                "registration.registered": False,
            },
        )
        if updated is None:
            logger.info("Skipped token mint for %s: already registered", account.email)
            return None

        # [R1] persisted above, dispatched below
        self.mailer.dispatch(
            updated.email,
            "registration_confirm",
            {
                "email": updated.email,
                "confirm_url": f"{self.policy.confirm_url}?{urlencode({'token': token})}",
                "expires_minutes": self.issuer.ttl(TokenType.REGISTRATION) // 60,
            },
        )
        logger.info("Registration pending confirmation for %s", updated.email)
        return token

    def notify_pending_review(self, account: Account) -> None:
        """Non-whitelisted path: tell the user to wait, tell the admin to review."""
        self.mailer.dispatch(account.email, "registration_pending", {"email": account.email})
        self.mailer.dispatch(self.policy.admin_email, "registration_request_admin", {"email": account.email})
        logger.info("Registration for %s queued for admin review", account.email)

    async def register_approve(self, email: str) -> ApprovalResult:
        """Admin approval. Idempotent once the account is registered.

        Authorization (admin role re-read from the store, session, CSRF) is the
        caller's job -- see auth/dependencies.require_admin.
        """
        account = await self.store.find_by_email(normalize_email(email))
        if account is None:
            raise NotFound()
        if account.registration.registered:
            return ApprovalResult(message=ALREADY_REGISTERED, account=account)

        token = await self.register_user(account)
        if token is None:
            return ApprovalResult(message=ALREADY_REGISTERED, account=account)
        logger.info("Registration approved for %s", account.email)
        fresh = await self.store.find_by_id(account.id)
        return ApprovalResult(message=APPROVED, account=fresh or account, token=token)

    async def register_deny(self, email: str) -> Account:
        """Admin denial. Clears any outstanding confirmation link.

        A registered account cannot be denied; that raises ValidationError.
        """
        account = await self.store.find_by_email(normalize_email(email))
        if account is None:
            raise NotFound()
        updated = await self.store.update_fields(
            {"id": account.id, "registration.registered": False},
            {"registration.status": STATUS_DENIED, "registration.token": None},
        )
        if updated is None:
            raise ValidationError(ALREADY_REGISTERED)
        logger.info("Registration denied for %s", account.email)
        return updated

    # ------------------------------------------------------------------
    # PENDING -> REGISTERED
    # ------------------------------------------------------------------

    async def confirm_registration(self, token: str) -> Account:
        """Consume a registration link and complete the registration.

        Resolution: verify the token, find the account by the stored token,
        require status pending, then clear the token in a conditional update
        keyed on the token itself [R2].
        """
        claims = self.issuer.verify_as(token, TokenType.REGISTRATION)
        account = await self.store.find_by_token("registration.token", token)
        if account is None or account.id != claims["id"]:
            raise TokenInvalid()
        if account.registration.status != STATUS_PENDING:
            logger.info("Confirmation for %s rejected: status %r", account.email, account.registration.status)
            raise TokenInvalid()

        updated = await self.store.update_fields(
            {"id": account.id, "registration.token": token, "registration.status": STATUS_PENDING},
            {
                "registration.token": None,
                "registration.status": STATUS_APPROVED,
                "registration.registered": True,
                "registration.date": _now().isoformat(),
            },
        )
        if updated is None:
            raise TokenInvalid()

        self.mailer.dispatch(updated.email, "registration_complete", {"email": updated.email})
        logger.info("Registration confirmed for %s", updated.email)
        return updated

    async def check_user_registration(self, email: str) -> bool:
        """Read-only: is this account registered? Raises NotFound if it does not exist."""
        account = await self.store.find_by_email(normalize_email(email))
        if account is None:
            raise NotFound()
        return account.is_registered

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def request_reset(self, email: str) -> str | None:
        """Store a reset token and email the link.

        Returns None (and sends nothing) for unknown, archived or unregistered
        accounts; a reset session is useless until registration completes. The
        HTTP layer answers identically either way.
        """
        account = await self.store.find_by_email(normalize_email(email))
        if account is None or not account.is_active or not account.is_registered:
            logger.info("Password reset requested for unknown, archived or unregistered account")
            return None

        token = self.issuer.issue_reset_token(account)
        ttl = self.issuer.ttl(TokenType.RESET)
        updated = await self.store.update_fields(
            {"id": account.id},
            {"reset.token": token, "reset.expires": (_now() + timedelta(seconds=ttl)).isoformat()},
        )
        if updated is None:
            return None

        self.mailer.dispatch(
            updated.email,
            "reset_password",
            {
                "email": updated.email,
                "reset_url": f"{self.policy.reset_url}?{urlencode({'token': token})}",
                "expires_minutes": ttl // 60,
            },
        )
        logger.info("Password reset link issued for %s", updated.email)
        return token

    async def confirm_reset(self, token: str) -> Account:
        """Consume a reset link and return the account it authorizes [R2]."""
        claims = self.issuer.verify_as(token, TokenType.RESET)
        account = await self.store.find_by_token("reset.token", token)
        if account is None or account.id != claims["id"] or not account.is_active:
            raise TokenInvalid()
        if account.reset.expires and _now() > datetime.fromisoformat(account.reset.expires):
            raise TokenInvalid()

        updated = await self.store.update_fields(
            {"id": account.id, "reset.token": token},
            {"reset.token": None, "reset.expires": None},
        )
        if updated is None:
            raise TokenInvalid()
        logger.info("Password reset link consumed for %s", updated.email)
        return updated

    async def update_password(self, account: Account, new_password: str) -> Account:
        """Re-hash and store a new password. The only path that rewrites the digest."""
        self.validate_password(new_password)
        digest = await run_in_threadpool(hash_password, new_password)
        updated = await self.store.update_fields({"id": account.id}, {"password_digest": digest})
        if updated is None:
            raise NotFound()
        logger.info("Password updated for %s", updated.email)
        return updated

    # ------------------------------------------------------------------
    # Federated sign-in
    # ------------------------------------------------------------------

    async def register_external(self, email: str, external_id: str) -> tuple[Account, bool]:
        """Resolve a federated identity to an account, creating one if needed.

        Returns (account, created). Lookup order: external id, then email (an
        existing password account is linked), then a new password-less account
        that goes through the same whitelist / admin-review branch as
        register().
        """
        account = await self.store.find_by_external_id(external_id)
        if account is not None:
            return account, False

        email = normalize_email(email)
        account = await self.store.find_by_email(email)
        if account is not None:
            linked = await self.store.update_fields(
                {"id": account.id, "external_id": None},
                {"external_id": external_id},
            )
            if linked is None:
                # Already linked to a different subject.
                raise DuplicateExternalId()
            logger.info("Linked external identity to %s", email)
            return linked, False

        try:
            account = await self.store.create(Account(email=email, external_id=external_id))
        except IntegrityError as exc:
            raise DuplicateExternalId() from exc
        logger.info("Account created for %s via external identity", email)
        outcome = await self._route_new_account(account)
        return outcome.account, True
