"""API dependencies - client identity, authentication and authorization"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from nutriclinic.core.database import get_db
from nutriclinic.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    EmailNotVerifiedError,
    TokenInvalidError,
    TokenOutdatedError,
)
from nutriclinic.core.tokens import token_codec
from nutriclinic.models.user import User, UserRole
from nutriclinic.services.account_service import account_service
from nutriclinic.services.revocation_service import revocation_service

# Missing credentials are reported by us, with our error body
security = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    """Authenticated caller: the user plus the verified token claims"""
    user: User
    claims: Dict[str, Any]
    token: str


def get_client_ip(request: Request) -> str:
    """
    Best-effort client address for throttling and audit.

    Proxy headers are trusted as-is; deploy behind a proxy that overwrites them.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return request.client.host if request.client else "unknown"


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    if not credentials or not credentials.credentials:
        return None
    return credentials.credentials


def resolve_token(db: Session, token: Optional[str]) -> AuthContext:
    """
    Verify an access token and load its user.

    Raises:
        AuthenticationError: token missing, invalid, revoked or outdated
    """
    if not token:
        raise AuthenticationError("Missing bearer token", details={"reason": "missing_token"})

    result = token_codec.verify(token)
    if not result.valid:
        raise TokenInvalidError(result.reason.value if result.reason else None)

    claims = result.payload
    if revocation_service.is_revoked(db, claims.get("jti")):
        raise TokenInvalidError("revoked")

    user = account_service.get_by_id(db, claims.get("sub"))
    if user is None:
        raise AuthenticationError("User not found")

    if claims.get("session_version", 0) != (user.session_version or 0):
        raise TokenOutdatedError()

    return AuthContext(user=user, claims=claims, token=token)


def get_auth_context(
    token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> AuthContext:
    """
    Get the authenticated caller from the bearer token

    Raises:
        AuthenticationError: If the token is missing or not acceptable
        AuthorizationError: If the account cannot be used
    """
    context = resolve_token(db, token)
    if not context.user.email_confirmed:
        raise EmailNotVerifiedError()
    if context.user.is_locked:
        raise AccountLockedError()
    return context


def get_optional_auth_context(
    token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> Optional[AuthContext]:
    """Caller if a valid bearer token was sent, None otherwise"""
    if not token:
        return None
    try:
        return resolve_token(db, token)
    except AuthenticationError:
        return None


def get_current_user(context: AuthContext = Depends(get_auth_context)) -> User:
    return context.user


def get_current_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if current_user.role != UserRole.ADMIN.value:
        raise AuthorizationError("Admin access required")
    return current_user
