"""
auth/errors.py -- Expected-failure taxonomy for the auth controllers.

Controllers raise AuthError subclasses for every anticipated failure
(bad input, wrong password, exhausted OTP, ...). api/main.py renders them
with the shared error envelope:

    {"error": {"code": "<code>", "message": "<human text>"}}

Anything that is not an AuthError is unexpected: it propagates to the
catch-all handler, is logged with a stack trace, and becomes a generic 500.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. status_code is the HTTP status the API layer returns."""

    status_code: int = 400
    default_code: str = "auth_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationFailed(AuthError):
    status_code = 400
    default_code = "validation_error"


class Conflict(AuthError):
    status_code = 409
    default_code = "conflict"


class Unauthorized(AuthError):
    status_code = 401
    default_code = "unauthorized"


class Forbidden(AuthError):
    status_code = 403
    default_code = "forbidden"


class NotFound(AuthError):
    status_code = 404
    default_code = "not_found"


class RateLimited(AuthError):
    status_code = 429
    default_code = "rate_limited"


class InternalFailure(AuthError):
    """An expected-but-fatal failure, e.g. the mail transport is down."""

    status_code = 500
    default_code = "internal_error"


class MailDeliveryError(Exception):
    """Raised by the mail transport when a message could not be handed off."""
