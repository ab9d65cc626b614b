"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)


# Validation Errors
class ValidationError(BaseAPIException):
    """Malformed, missing or out-of-policy input"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable"""
    def __init__(self):
        super().__init__("Invalid credentials")


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token unknown, revoked, expired or already rotated"""
    def __init__(self):
        super().__init__("Invalid refresh token")


class TokenInvalidError(AuthenticationError):
    """Access token failed verification"""
    def __init__(self, reason: Optional[str] = None):
        super().__init__("Invalid token", details={"reason": reason} if reason else None)


class TokenOutdatedError(AuthenticationError):
    """Access token predates the user's current session_version"""
    def __init__(self):
        super().__init__("Token outdated", details={"reason": "stale_session"})


class InvalidVerificationError(AuthenticationError):
    """Verification or reset artifact missing, wrong, used or expired"""
    def __init__(self, message: str = "Invalid or expired code"):
        super().__init__(message)


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


class EmailNotVerifiedError(AuthorizationError):
    """Account exists but email confirmation is pending"""
    def __init__(self):
        super().__init__("Email not verified")


class AccountLockedError(AuthorizationError):
    """Account was locked by an administrator"""
    def __init__(self):
        super().__init__("Account is locked")


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


class RateLimitExceededError(BaseAPIException):
    """Lockout or cooldown in effect"""
    def __init__(
        self,
        message: str = "Too many attempts. Please try again later.",
        retry_after: int = 60,
    ):
        retry_after = max(1, int(retry_after))
        super().__init__(
            message,
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


# System Errors
class InternalServiceError(BaseAPIException):
    """Unexpected failure with a client-safe message"""
    def __init__(self, message: str = "Internal Server Error"):
        super().__init__(message, status_code=500)


class DatabaseError(InternalServiceError):
    """Database operation failed"""
    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message)


class EmailDeliveryError(InternalServiceError):
    """Transactional email provider rejected or never answered"""
    def __init__(self, message: str = "Email delivery failed"):
        super().__init__(message)
