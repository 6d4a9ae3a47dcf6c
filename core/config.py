"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the onboarding service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Settings
      are read-only after startup; the credential issuer receives an immutable
      IssuerConfig copy of the signing material (see auth/tokens.py).

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation of the signing keys
      and token lifetimes once all fields are resolved.

Security notes:
  [K1] Both signing keys must be at least 32 characters and must differ. The
       public key signs tokens that travel in URLs and readable cookies; if it
       equalled the private key, a leaked link would be able to mint sessions.

  [K2] Outside debug mode a missing key is a hard startup failure.

  [K3] Link-carried tokens (registration, reset) must expire before session
       tokens do.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or mail/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("oni.config")

_MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = "sqlite:///onboarding.db"
    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:8000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_allowed_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Signing keys -- empty string means "not configured" [K2]
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    jwt_public_secret: str = ""

    # ------------------------------------------------------------------
    # Token and cookie lifetimes
    # ------------------------------------------------------------------

    session_token_ttl_seconds: int = 3600
    registration_token_ttl_seconds: int = 1800
    reset_token_ttl_seconds: int = 600
    csrf_ttl_seconds: int = 60

    secure_cookies: bool = False
    # Host only (no scheme). None leaves the public cookie host-only.
    cookie_domain: str | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    min_password_length: int = 6
    admin_email: str = "admin@example.com"
    # Where /register/confirm sends the browser after a successful confirmation.
    # Empty string means "answer with JSON instead of redirecting".
    registration_complete_url: str = ""
    # Frontend page that renders the "choose a new password" form. The reset
    # link lands on the API, which establishes a session and redirects here.
    # Empty string means "answer with JSON instead of redirecting".
    password_reset_url: str = ""
    # Echo the registration token in the POST /register body. Honoured only
    # when debug is also on.
    expose_debug_tokens: bool = False

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    email_backend: str = "log"  # "log" for dev, "smtp" for production
    mail_from: str = "support@onboarding.example.com"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = False

    # ------------------------------------------------------------------
    # Google sign-in (optional -- empty string means disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [K1] [K2].

        Debug mode: generate any missing key with a warning. Sessions and
            emailed links will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.
        """
        for field in ("jwt_secret", "jwt_public_secret"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field.upper())

        if len(self.jwt_secret) < _MIN_KEY_LENGTH or len(self.jwt_public_secret) < _MIN_KEY_LENGTH:
            raise ValueError(f"JWT_SECRET and JWT_PUBLIC_SECRET must be at least {_MIN_KEY_LENGTH} characters.")
        if self.jwt_secret == self.jwt_public_secret:
            raise ValueError("JWT_SECRET and JWT_PUBLIC_SECRET must differ.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        """Link tokens must be shorter-lived than sessions [K3]."""
        for field in ("registration_token_ttl_seconds", "reset_token_ttl_seconds"):
            if getattr(self, field) >= self.session_token_ttl_seconds:
                raise ValueError(f"{field.upper()} must be shorter than SESSION_TOKEN_TTL_SECONDS.")
        if self.csrf_ttl_seconds <= 0:
            raise ValueError("CSRF_TTL_SECONDS must be positive.")
        return self

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
