"""Typed application errors; mapped to HTTP responses by ums.api.error_handling."""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors

    def to_dict(self) -> dict:
        body: dict = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    status_code = 400

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None) -> None:
        super().__init__(message, errors=errors)


class AuthenticationError(AppError):
    status_code = 401

    def __init__(self, message: str) -> None:
        super().__init__(message)


class AuthorizationError(AppError):
    status_code = 403

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConflictError(AppError):
    status_code = 409

    def __init__(self, message: str) -> None:
        super().__init__(message)


class CSRFError(AppError):
    """403 with a machine-readable code: CSRF_TOKEN_MISSING or CSRF_TOKEN_INVALID."""

    status_code = 403

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["code"] = self.code
        return body


class RateLimitExceededError(AppError):
    status_code = 429

    def __init__(self, message: str, retry_after: int, limit: int, reset_time: str) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit
        self.reset_time = reset_time

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(
            {
                "retryAfter": self.retry_after,
                "limit": self.limit,
                "remaining": 0,
                "resetTime": self.reset_time,
            }
        )
        return body


class ErrorMessages:
    INVALID_CREDENTIALS = "Invalid email or password"
    NOT_AUTHORIZED = "Not authorized to access this route"
    TOKEN_EXPIRED = "Your session has expired. Please login again"
    TOKEN_INVALID = "Invalid authentication token"
    REFRESH_TOKEN_INVALID = "Invalid or expired refresh token"

    USER_NOT_FOUND = "User not found"
    USER_EXISTS = "User with this email already exists"
    NO_ACCOUNT = (
        "No account found with this email address. Please check your email or sign up for a new account."
    )
    WRONG_PASSWORD = "Incorrect password. Please check your password and try again."
    USER_INACTIVE = "Your account is inactive. Please contact support to reactivate your account."
    USER_SUSPENDED = "Your account has been suspended. Please contact support for assistance."
    USER_NOT_ACTIVE = "Your account is not active. Please contact support."
    ACCOUNT_NOT_ACTIVE = "Account is not active"
    EMAIL_NOT_VERIFIED = (
        "Please verify your email address before logging in. Check your inbox for a verification email."
    )
    EMAIL_ALREADY_VERIFIED = "Email is already verified"

    PASSWORD_MISMATCH = "Current password is incorrect"
    PASSWORD_RESET_INVALID = "Invalid password reset token"

    ROLE_FORBIDDEN = "User role is not authorized to access this route"

    INTERNAL_SERVER_ERROR = "Something went wrong. Please try again later"
