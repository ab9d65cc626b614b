"""Pydantic schemas for API validation"""

from nutriclinic.schemas.user import (
    RegisterRequest,
    LoginRequest,
    ConfirmVerificationRequest,
    EmailOnlyRequest,
    RefreshTokenRequest,
    LogoutRequest,
    ResetPasswordRequest,
    ChangePasswordRequest,
    IntrospectionRequest,
    RoleChangeRequest,
    UserResponse,
    TokenResponse,
    RegistrationResponse,
    OkResponse,
    IntrospectionResponse,
    UserListResponse,
)
from nutriclinic.schemas.response import ErrorResponse, HealthResponse

__all__ = [
    "RegisterRequest", "LoginRequest", "ConfirmVerificationRequest", "EmailOnlyRequest",
    "RefreshTokenRequest", "LogoutRequest", "ResetPasswordRequest", "ChangePasswordRequest",
    "IntrospectionRequest", "RoleChangeRequest",
    "UserResponse", "TokenResponse", "RegistrationResponse", "OkResponse",
    "IntrospectionResponse", "UserListResponse",
    "ErrorResponse", "HealthResponse",
]
