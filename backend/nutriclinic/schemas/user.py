"""Auth and user schemas"""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from nutriclinic.config import settings
from nutriclinic.models.user import UserRole

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_POLICY_REGEX = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[\W_]).{8,64}$")
PASSWORD_POLICY_MESSAGE = (
    "Password must be 8-64 characters and include lowercase, uppercase, number and symbol"
)
_E164 = re.compile(r"^\+[1-9]\d{7,14}$")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_REGEX.match(value.strip()))


def validate_email_value(value: str) -> str:
    value = (value or "").strip()
    if not EMAIL_REGEX.match(value):
        raise ValueError("Invalid email format")
    return value


def validate_password_policy(value: str) -> str:
    # bcrypt only looks at the first 72 bytes
    if not PASSWORD_POLICY_REGEX.match(value or "") or len(value.encode("utf-8")) > 72:
        raise ValueError(PASSWORD_POLICY_MESSAGE)
    return value


def normalize_phone(value: str, default_country_code: str) -> str:
    """
    Normalize to E.164. Numbers without ``+`` and with 10-11 digits get the
    default country code prepended.
    """
    raw = (value or "").strip()
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("+"):
        candidate = f"+{digits}"
    elif raw.startswith("00"):
        candidate = f"+{digits[2:]}"
    elif len(digits) in (10, 11):
        candidate = f"+{default_country_code}{digits}"
    else:
        candidate = f"+{digits}"
    if not _E164.match(candidate):
        raise ValueError("Invalid phone number")
    return candidate


class RegisterRequest(BaseModel):
    """Registration payload"""
    email: str = Field(..., max_length=255)
    password: str
    full_name: str = Field(..., min_length=1, max_length=200)
    phone: str
    birth_date: Optional[date] = None

    @field_validator("email")
    @classmethod
    def _email(cls, v):
        return validate_email_value(v)

    @field_validator("password")
    @classmethod
    def _password(cls, v):
        return validate_password_policy(v)

    @field_validator("full_name")
    @classmethod
    def _full_name(cls, v):
        v = " ".join(v.split())
        if not v:
            raise ValueError("Full name is required")
        return v

    @field_validator("phone")
    @classmethod
    def _phone(cls, v):
        return normalize_phone(v, settings.DEFAULT_PHONE_COUNTRY_CODE)

    @field_validator("birth_date")
    @classmethod
    def _birth_date(cls, v):
        if v is not None and v > date.today():
            raise ValueError("Birth date cannot be in the future")
        return v

    @property
    def display_name(self) -> str:
        return self.full_name.split(" ")[0]


class LoginRequest(BaseModel):
    """Login payload"""
    email: str
    password: str = Field(..., min_length=1)
    remember: bool = False

    @field_validator("email")
    @classmethod
    def _email(cls, v):
        return validate_email_value(v)


class ConfirmVerificationRequest(BaseModel):
    """Either ``token`` (link) or ``email`` + ``code`` (manual entry)"""
    token: Optional[str] = None
    email: Optional[str] = None
    code: Optional[str] = None

    @model_validator(mode="after")
    def _one_variant(self):
        if self.token:
            return self
        if self.email and self.code:
            return self
        raise ValueError("token or (email and code) required")


class EmailOnlyRequest(BaseModel):
    """Resend verification / request reset. Validity is checked silently."""
    email: Optional[str] = None


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ResetPasswordRequest(BaseModel):
    """Either ``token`` or ``email`` + ``code``, plus the new password"""
    token: Optional[str] = None
    email: Optional[str] = None
    code: Optional[str] = None
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, v):
        return validate_password_policy(v)

    @model_validator(mode="after")
    def _one_variant(self):
        if self.token or (self.email and self.code):
            return self
        raise ValueError("token or (email and code) required")


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, v):
        return validate_password_policy(v)


class IntrospectionRequest(BaseModel):
    token: Optional[str] = None


class RoleChangeRequest(BaseModel):
    role: UserRole


class UserResponse(BaseModel):
    """User response schema"""
    id: str
    email: str
    role: str
    state: str
    email_confirmed: bool
    display_name: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user) -> "UserResponse":
        data = user.to_dict()
        data["created_at"] = user.created_at
        data["last_login_at"] = user.last_login_at
        return cls(**data)


class TokenResponse(BaseModel):
    """Access token (and, when a session was opened, refresh token) response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    display_name: Optional[str] = None
    user_id: Optional[str] = None


class RegistrationResponse(BaseModel):
    ok: bool = True
    user_id: str


class OkResponse(BaseModel):
    ok: bool = True


class IntrospectionResponse(BaseModel):
    valid: bool
    payload: Dict[str, Any]
    reason: Optional[str] = None


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
    page: int
    page_size: int
    cached: bool = False
