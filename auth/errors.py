"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure the workflow can signal is an AuthError subclass carrying the
HTTP status and the user-visible message. api/main.py registers one exception
handler for the base class that renders {"success": false, "error": message},
so services raise and never build responses themselves.

Messages are deliberately coarse where they cross a trust boundary:
InvalidCredentials is identical for "no such email" and "wrong password", and
every token failure (signature, expiry, stored-token mismatch) collapses to the
same TokenInvalid message before reaching a client.

Layer rule: no imports from api/, mail/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses set status_code and a default message."""

    status_code: int = 500
    message: str = "Server Error"
    # Cookie names to expire on the error response.
    clear_cookies: tuple[str, ...] = ()

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(AuthError):
    status_code = 400
    message = "Invalid request"


class Unauthorized(AuthError):
    status_code = 401
    message = "Not authorized"


class Forbidden(AuthError):
    status_code = 403
    message = "Forbidden"


class NotFound(AuthError):
    status_code = 404
    message = "User not found"


class Conflict(AuthError):
    status_code = 409
    message = "Duplicate field value entered"


class DependencyFailure(AuthError):
    status_code = 500
    message = "Server Error"


# ---------------------------------------------------------------------------
# Specialized errors
# ---------------------------------------------------------------------------


class InvalidCredentials(Unauthorized):
    message = "Invalid credentials"


class TokenInvalid(Unauthorized):
    message = "Invalid or expired token"


class TokenExpired(TokenInvalid):
    """Raised by the issuer on an expired signature.

    Subclasses TokenInvalid and keeps the same message so a client cannot tell
    expiry apart from tampering.
    """


class InvalidCsrfToken(Forbidden):
    message = "Invalid CSRF token"


class CsrfTokenExpired(Forbidden):
    message = "CSRF token has expired"

    def __init__(self, cookie_name: str) -> None:
        super().__init__()
        self.clear_cookies = (cookie_name,)


class DuplicateEmail(Conflict):
    message = "Duplicate email"


class DuplicateExternalId(Conflict):
    message = "Duplicate external id"
