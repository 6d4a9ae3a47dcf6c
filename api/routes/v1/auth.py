"""
api/routes/v1/auth.py -- Session, CSRF and password endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets session cookies
  GET  /api/v1/auth/logout             -- expires session and CSRF cookies; 200
  POST /api/v1/auth/request-csrftoken  -- seed the CSRF cookie, return its token
  GET  /api/v1/auth/me                 -- current account (auth + CSRF)
  POST /api/v1/auth/password           -- set a new password (auth + CSRF)
  POST /api/v1/auth/forgotpassword     -- email a reset link; 200 regardless
  GET  /api/v1/auth/resetpassword      -- consume a reset link; sets session cookies
  GET  /api/v1/auth/google             -- start Google sign-in
  GET  /api/v1/auth/google/callback    -- finish Google sign-in; sets session cookies

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] SessionOrchestrator.login() provides timing equalization and one
       generic failure -- use it, never inline store lookups + verify_password().
  [M5] Cache-Control: no-store on every response that sets credentials.
  POST /forgotpassword answers identically for known and unknown emails.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from starlette.responses import Response

from api.limiter import limiter, login_limit
from api.models import CsrfResponse, EmailRequest, LoginRequest, MeResponse, MessageResponse, PasswordRequest
from auth.dependencies import csrf_check, csrf_issue, get_current_account
from auth.errors import NotFound
from auth.models import Account
from auth.oauth import GOOGLE, get_google_user_info
from auth.registration import RegistrationWorkflow
from auth.sessions import SessionOrchestrator

logger = logging.getLogger("oni.api.auth")

RESET_REQUESTED = "If an account exists for that email, a reset link has been sent"

# Auth policy:
# - POST /auth/login:              public
# - GET  /auth/logout:             public -- clearing cookies needs no prior auth
# - POST /auth/request-csrftoken:  requires auth (get_current_account)
# - GET  /auth/me:                 requires auth + CSRF
# - POST /auth/password:           requires auth + CSRF
# - POST /auth/forgotpassword:     public
# - GET  /auth/resetpassword:      public -- the signed link is the credential
# - GET  /auth/google[/callback]:  public
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
async def login(request: Request, body: LoginRequest) -> Response:
    """Authenticate with email and password; set both session cookies.

    Returns the same 401 body for unknown email, wrong password, federated
    account without a password, and archived account.
    """
    sessions: SessionOrchestrator = request.app.state.sessions
    account = await sessions.login(body.email, body.password)
    return sessions.establish_session(account, {"email": account.email, "role": account.role})


@router.get("/auth/logout")
async def logout(request: Request) -> Response:
    """Expire the session, public-session and CSRF cookies."""
    sessions: SessionOrchestrator = request.app.state.sessions
    return sessions.logout()


@router.post("/auth/forgotpassword", response_model=MessageResponse)
async def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Email a single-use reset link if the account exists."""
    registration: RegistrationWorkflow = request.app.state.registration
    await registration.request_reset(body.email)
    return MessageResponse(message=RESET_REQUESTED)


@router.get("/auth/resetpassword")
async def reset_password(request: Request, token: str = Query(default="")) -> Response:
    """Consume a reset link and sign the account in.

    Redirects to PASSWORD_RESET_URL when configured so the frontend can show
    the new-password form; otherwise answers with JSON.
    """
    registration: RegistrationWorkflow = request.app.state.registration
    sessions: SessionOrchestrator = request.app.state.sessions
    account = await registration.confirm_reset(token)

    target = request.app.state.settings.password_reset_url
    payload = {"redirect": target} if target else {"email": account.email, "message": "Choose a new password"}
    return sessions.establish_session(account, payload)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/request-csrftoken", response_model=CsrfResponse)
async def request_csrf_token(
    account: Account = Depends(get_current_account),
    csrf: str = Depends(csrf_issue),
) -> CsrfResponse:
    """Seed the CSRF cookie (if absent) and return the token to echo in X-CSRF-Token."""
    return CsrfResponse(csrf=csrf)


@router.get("/auth/me", response_model=MeResponse)
async def me(
    request: Request,
    account: Account = Depends(get_current_account),
    _csrf: None = Depends(csrf_check),
) -> MeResponse:
    """Return identity information for the current account."""
    sessions: SessionOrchestrator = request.app.state.sessions
    return MeResponse(**sessions.who_am_i(account))


@router.post("/auth/password", response_model=MessageResponse)
async def update_password(
    request: Request,
    body: PasswordRequest,
    account: Account = Depends(get_current_account),
    _csrf: None = Depends(csrf_check),
) -> MessageResponse:
    """Replace the current account's password."""
    registration: RegistrationWorkflow = request.app.state.registration
    await registration.update_password(account, body.password)
    return MessageResponse(message="Password updated")


# ---------------------------------------------------------------------------
# Google sign-in
# ---------------------------------------------------------------------------


def _google_client(request: Request):
    client = request.app.state.oauth.create_client(GOOGLE)
    if client is None:
        raise NotFound("Google sign-in is not configured")
    return client


def _login_error(request: Request, code: str) -> RedirectResponse:
    return RedirectResponse(f"{request.app.state.settings.frontend_url}/login?error={code}", status_code=302)


@router.get("/auth/google")
async def google_login(request: Request) -> Response:
    """Redirect the browser to Google's authorization page."""
    client = _google_client(request)
    redirect_uri = str(request.url_for("google_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/google/callback", name="google_callback")
async def google_callback(request: Request) -> Response:
    """Handle the Google callback and sign the account in.

    Flow:
      1. Exchange the authorization code (authlib checks state via the session).
      2. Extract (email, subject) -- raises ValueError if unverified [H1].
      3. Resolve the account: by subject, else link by email, else create one
         and run it through the whitelist / admin-review branch.
      4. Reject archived accounts.
      5. Set session cookies and redirect to the frontend.
    """
    client = _google_client(request)
    registration: RegistrationWorkflow = request.app.state.registration
    sessions: SessionOrchestrator = request.app.state.sessions

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return _login_error(request, "oauth_failed")

    try:
        email, subject = get_google_user_info(token)
    except ValueError:
        logger.warning("Google sign-in rejected: unverified or missing email")
        return _login_error(request, "oauth_failed")

    account, _created = await registration.register_external(email, subject)
    if not account.is_active:
        return _login_error(request, "account_disabled")

    return sessions.establish_session(account, {"redirect": request.app.state.settings.frontend_url})
