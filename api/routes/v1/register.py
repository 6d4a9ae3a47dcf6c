"""
api/routes/v1/register.py -- Registration lifecycle endpoints.

Routes:
  POST /api/v1/auth/register           -- create an account; 201
  GET  /api/v1/auth/register/confirm   -- consume a confirmation link; sets session cookies
  POST /api/v1/auth/register/approve   -- admin: send the confirmation link (auth + CSRF)
  POST /api/v1/auth/register/deny      -- admin: deny a registration (auth + CSRF)
  GET  /api/v1/auth/register/status    -- admin: is this email registered?

POST /register answers 201 for both the whitelisted and the admin-review path;
the whitelisted flag in the body tells the client which email to expect.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from starlette.responses import Response

from api.models import EmailRequest, MessageResponse, RegisterRequest, RegisterResponse, RegistrationStatusResponse
from auth.dependencies import csrf_check, require_admin
from auth.models import Account
from auth.registration import RegistrationWorkflow, normalize_email
from auth.sessions import SessionOrchestrator

WHITELISTED = "Registration successful, please check your email to confirm"
PENDING_REVIEW = "Registration received, an administrator will review your request"

# Auth policy:
# - POST /auth/register:          public
# - GET  /auth/register/confirm:  public -- the signed link is the credential
# - POST /auth/register/approve:  requires admin + CSRF
# - POST /auth/register/deny:     requires admin + CSRF
# - GET  /auth/register/status:   requires admin
router = APIRouter()


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account, then take the whitelist or the admin-review path."""
    registration: RegistrationWorkflow = request.app.state.registration
    outcome = await registration.register(body.email, body.password)

    settings = request.app.state.settings
    expose = settings.debug and settings.expose_debug_tokens
    return RegisterResponse(
        message=WHITELISTED if outcome.whitelisted else PENDING_REVIEW,
        whitelisted=outcome.whitelisted,
        token=outcome.token if expose else None,
    )


@router.get("/auth/register/confirm")
async def confirm(request: Request, token: str = Query(default="")) -> Response:
    """Complete a registration and sign the account in.

    Redirects to REGISTRATION_COMPLETE_URL when configured; otherwise JSON.
    """
    registration: RegistrationWorkflow = request.app.state.registration
    sessions: SessionOrchestrator = request.app.state.sessions
    account = await registration.confirm_registration(token)

    target = request.app.state.settings.registration_complete_url
    payload = {"redirect": target} if target else {"email": account.email, "message": "Registration complete"}
    return sessions.establish_session(account, payload)


@router.post("/auth/register/approve", response_model=MessageResponse)
async def approve(
    request: Request,
    body: EmailRequest,
    admin: Account = Depends(require_admin),
    _csrf: None = Depends(csrf_check),
) -> MessageResponse:
    """Approve a registration. Repeating it for a registered account is a no-op."""
    registration: RegistrationWorkflow = request.app.state.registration
    result = await registration.register_approve(body.email)
    return MessageResponse(message=result.message)


@router.post("/auth/register/deny", response_model=MessageResponse)
async def deny(
    request: Request,
    body: EmailRequest,
    admin: Account = Depends(require_admin),
    _csrf: None = Depends(csrf_check),
) -> MessageResponse:
    """Deny a registration that has not completed."""
    registration: RegistrationWorkflow = request.app.state.registration
    await registration.register_deny(body.email)
    return MessageResponse(message="Registration denied")


@router.get("/auth/register/status", response_model=RegistrationStatusResponse)
async def status(
    request: Request,
    email: str = Query(max_length=254),
    admin: Account = Depends(require_admin),
) -> RegistrationStatusResponse:
    registration: RegistrationWorkflow = request.app.state.registration
    email = normalize_email(email)
    registered = await registration.check_user_registration(email)
    return RegistrationStatusResponse(email=email, registered=registered)
