"""
auth/tokens.py -- Credential issuer (JWT) and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Two keys, separated by purpose [T1]:
       - private key: signs session tokens only. Those never leave the
         server-set httpOnly cookie (or a Bearer header the client echoes).
       - public key:  signs everything that may be seen by the client or
         carried in a URL -- the readable public-session cookie and the
         registration / password-reset links. A leaked link can therefore
         never be replayed as a session token.
       Every token carries a "type" claim, and verify_as() checks it against a
       closed dispatch table, so a registration token is not accepted where a
       reset token is expected even though both use the public key.

  Link tokens carry a random jti so two mints for the same account within
  one second still differ -- a re-issued link always invalidates the
  previous one when it replaces the stored value.

  Passwords: bcrypt used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in auth/sessions.login() so
       response time does not reveal whether an email exists [C1].

  Configuration: the issuer is built from an immutable IssuerConfig value
       (frozen dataclass) derived from core.config at startup. There is no
       module-level key state; tests construct issuers with their own keys.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid

if TYPE_CHECKING:
    from auth.models import Account
    from core.config import Settings

logger = logging.getLogger("oni.auth.tokens")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects input longer than 72 bytes; RegistrationWorkflow and the
    request models refuse such passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed digest (e.g. a placeholder in seed data).
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("onboarding_timing_dummy")


def dummy_verify(plain: str) -> None:
    """Burn one bcrypt check against a throwaway digest. Always returns None."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token types and configuration
# ---------------------------------------------------------------------------


class TokenType(str, Enum):
    SESSION = "session"
    PUBLIC = "public"
    REGISTRATION = "registration"
    RESET = "resetpassword"


@dataclass(frozen=True)
class IssuerConfig:
    """Signing material and lifetimes. Immutable once built."""

    private_key: str
    public_key: str
    session_ttl: int
    registration_ttl: int
    reset_ttl: int

    @classmethod
    def from_settings(cls, settings: Settings) -> IssuerConfig:
        return cls(
            private_key=settings.jwt_secret,
            public_key=settings.jwt_public_secret,
            session_ttl=settings.session_token_ttl_seconds,
            registration_ttl=settings.registration_token_ttl_seconds,
            reset_ttl=settings.reset_token_ttl_seconds,
        )


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class CredentialIssuer:
    """Mints and verifies the four token kinds.

    Usage:
        issuer = CredentialIssuer(IssuerConfig.from_settings(get_settings()))
        token = issuer.issue_session_token(account)
        claims = issuer.verify_as(token, TokenType.SESSION)
    """

    def __init__(self, config: IssuerConfig) -> None:
        self._config = config
        # Closed dispatch table: token type -> (signing key, lifetime) [T1]
        self._kinds: dict[TokenType, tuple[str, int]] = {
            TokenType.SESSION: (config.private_key, config.session_ttl),
            TokenType.PUBLIC: (config.public_key, config.session_ttl),
            TokenType.REGISTRATION: (config.public_key, config.registration_ttl),
            TokenType.RESET: (config.public_key, config.reset_ttl),
        }

    @property
    def private_key(self) -> str:
        return self._config.private_key

    @property
    def public_key(self) -> str:
        return self._config.public_key

    def ttl(self, kind: TokenType) -> int:
        return self._kinds[kind][1]

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def issue_session_token(self, account: Account) -> str:
        """Server-verified bearer credential. Signed with the private key."""
        return self._sign(TokenType.SESSION, {"id": account.id, "email": account.email})

    def issue_public_token(self, account: Account) -> str:
        """Client-readable identity for UI state. Signed with the public key.

        Carries no secret material: id, email, registration flag and role.
        """
        claims = {
            "id": account.id,
            "email": account.email,
            "registered": account.is_registered,
            "role": account.role,
        }
        return self._sign(TokenType.PUBLIC, claims)

    def issue_registration_token(self, account: Account) -> str:
        """Single-use confirmation link token. Short TTL, public key."""
        return self._sign(TokenType.REGISTRATION, {"id": account.id, "email": account.email, "jti": _jti()})

    def issue_reset_token(self, account: Account) -> str:
        """Single-use password-reset link token. Short TTL, public key."""
        return self._sign(TokenType.RESET, {"id": account.id, "email": account.email, "jti": _jti()})

    def _sign(self, kind: TokenType, claims: dict) -> str:
        key, ttl = self._kinds[kind]
        payload = dict(claims)
        payload["type"] = kind.value
        payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        return jwt.encode(payload, key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str, key: str) -> dict:
        """Verify signature and expiry against one key and return the claims.

        Raises TokenExpired for a valid signature past its exp, TokenInvalid for
        anything else (bad signature, malformed token, missing claims). Both
        render with the same message; the distinction exists for logging.
        """
        if not token:
            raise TokenInvalid()
        try:
            claims = jwt.decode(token, key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc
        if "id" not in claims or "email" not in claims:
            raise TokenInvalid()
        return claims

    def verify_as(self, token: str, kind: TokenType) -> dict:
        """Verify a token of an expected kind with that kind's key.

        The type claim must match. A public-key token presented where a
        session token is expected fails on the signature before the type
        check is even reached.
        """
        key, _ = self._kinds[kind]
        claims = self.verify(token, key)
        if claims.get("type") != kind.value:
            logger.info("Token type mismatch: expected %s, got %r", kind.value, claims.get("type"))
            raise TokenInvalid()
        return claims


def _jti() -> str:
    return secrets.token_hex(8)
