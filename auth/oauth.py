"""
auth/oauth.py -- Authlib OAuth/OIDC registry for Google sign-in.

build_oauth() registers Google only when both GOOGLE_CLIENT_ID and
GOOGLE_CLIENT_SECRET are configured. api/main.py stores the registry on
app.state.oauth; the /google routes answer 404 when it has no client.

Security notes:
  [H1] Email verification is mandatory. get_google_user_info() raises
       ValueError if Google does not confirm the email is verified.

  OAuth state parameter (CSRF protection for the redirect round trip) is
  handled by authlib via Starlette SessionMiddleware. The session stores the
  state between the authorization redirect and the callback.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("oni.auth.oauth")

GOOGLE = "google"
_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


def build_oauth(settings: Settings) -> OAuth:
    oauth = OAuth()
    if settings.google_enabled:
        oauth.register(
            name=GOOGLE,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=_GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    return oauth


def get_google_user_info(token: dict) -> tuple[str, str]:
    """Extract (email, subject_id) from a Google id_token response.

    [H1] The email claim is only accepted when email_verified is True. A
    missing email_verified claim is treated as unverified.

    Raises:
        ValueError: If a verified email and subject cannot be confirmed.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("Google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError("Google OAuth: email is not verified")

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError("Google OAuth: missing email or sub claim in userinfo")

    return email, str(subject_id)
