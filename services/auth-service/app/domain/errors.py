"""Typed failures raised by the authentication core.

Each error carries the HTTP ``status_code`` and a stable ``error_code`` used by
the API layer. Messages are safe to return to clients: they never contain
secrets, hashes or hints about which credential factor was wrong.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code: int = 400
    error_code: str = "bad_request"
    default_message: str = "request rejected"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "invalid email or password"


class AccountNotUsable(AuthError):
    status_code = 403
    error_code = "account_not_usable"
    default_message = "account cannot be used to sign in"


class EmailAlreadyExists(AuthError):
    status_code = 409
    error_code = "email_exists"
    default_message = "email already registered"


class PasswordMismatch(AuthError):
    status_code = 400
    error_code = "password_mismatch"
    default_message = "password confirmation does not match"


class WeakPassword(AuthError):
    status_code = 400
    error_code = "weak_password"
    default_message = "password does not meet the password policy"


class InvalidToken(AuthError):
    status_code = 401
    error_code = "invalid_token"
    default_message = "invalid access token"


class InvalidRefreshToken(AuthError):
    status_code = 401
    error_code = "invalid_refresh_token"
    default_message = "invalid refresh token"


class MissingToken(AuthError):
    status_code = 401
    error_code = "missing_token"
    default_message = "access token is required"


class UserNotFound(AuthError):
    status_code = 401
    error_code = "user_not_found"
    default_message = "user not found"


class NotAuthenticated(AuthError):
    status_code = 401
    error_code = "not_authenticated"
    default_message = "not authenticated"


class AccountInactive(AuthError):
    status_code = 401
    error_code = "account_inactive"
    default_message = "account is not active"


class AuthenticationFailed(AuthError):
    status_code = 401
    error_code = "authentication_failed"
    default_message = "authentication failed"


class Forbidden(AuthError):
    """Authenticated caller whose account state or role disallows the request."""

    status_code = 403
    error_code = "forbidden"

    MESSAGES = {
        "inactive": "account is inactive",
        "locked": "account is locked",
        "suspended": "account is suspended",
        "unverified": "email verification required",
        "insufficient_permissions": "insufficient permissions",
    }

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(self.MESSAGES.get(reason, "forbidden"))


class NotFound(AuthError):
    status_code = 404
    error_code = "not_found"
    default_message = "resource not found"


class InvalidResetToken(AuthError):
    status_code = 400
    error_code = "invalid_reset_token"
    default_message = "invalid or expired reset token"


class InvalidVerificationToken(AuthError):
    status_code = 400
    error_code = "invalid_verification_token"
    default_message = "invalid or expired verification token"


class RateLimited(AuthError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limited"


class HashFormatError(ValueError):
    """Raised by the password hasher when a stored hash cannot be parsed."""
