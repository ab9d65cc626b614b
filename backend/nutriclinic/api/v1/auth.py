"""Authentication routes"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from nutriclinic.api.deps import (
    AuthContext,
    get_auth_context,
    get_bearer_token,
    get_client_ip,
    get_optional_auth_context,
    resolve_token,
)
from nutriclinic.core.database import get_db
from nutriclinic.core.tokens import token_codec
from nutriclinic.schemas.user import (
    ChangePasswordRequest,
    ConfirmVerificationRequest,
    EmailOnlyRequest,
    IntrospectionRequest,
    IntrospectionResponse,
    LoginRequest,
    LogoutRequest,
    OkResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RegistrationResponse,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from nutriclinic.services.account_service import AuthResult, account_service

router = APIRouter()


def _token_response(result: AuthResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        refresh_token=result.refresh_token,
        expires_at=result.refresh_expires_at,
        display_name=result.user.display_name,
        user_id=result.user.id,
    )


@router.post("/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register(
    data: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Create an account (or refresh a pending one) and email its confirmation code and link.
    """
    result = account_service.register(db, data, client_ip=get_client_ip(request))
    return RegistrationResponse(user_id=result.user_id)


@router.post("/confirm-verification", response_model=TokenResponse)
def confirm_verification(
    data: ConfirmVerificationRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Confirm the account with either the emailed link token or email + code.

    Returns:
        Access token and a new refresh session
    """
    result = account_service.confirm_verification(
        db,
        token=data.token,
        email=data.email,
        code=data.code,
        client_ip=get_client_ip(request),
    )
    return _token_response(result)


@router.post("/resend-verification", response_model=OkResponse)
def resend_verification(data: EmailOnlyRequest, db: Session = Depends(get_db)):
    account_service.resend_verification(db, data.email)
    return OkResponse()


@router.post("/login", response_model=TokenResponse)
def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Login endpoint - authenticate user and return an access token

    A refresh token is only issued when ``remember`` is true.
    """
    result = account_service.login(
        db,
        credentials.email,
        credentials.password,
        remember=credentials.remember,
        client_ip=get_client_ip(request),
    )
    return _token_response(result)


@router.post("/refresh", response_model=TokenResponse)
def refresh(data: RefreshTokenRequest, request: Request, db: Session = Depends(get_db)):
    """Rotate the refresh token and issue a new access token"""
    return _token_response(
        account_service.refresh(db, data.refresh_token, client_ip=get_client_ip(request))
    )


@router.post("/logout", response_model=OkResponse)
def logout(
    data: LogoutRequest,
    request: Request,
    context: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: Session = Depends(get_db)
):
    """
    Revoke the session behind the refresh token. Safe to repeat.
    """
    account_service.logout(
        db,
        data.refresh_token,
        access_claims=context.claims if context else None,
        client_ip=get_client_ip(request),
    )
    return OkResponse()


@router.post("/request-reset", response_model=OkResponse)
def request_reset(data: EmailOnlyRequest, db: Session = Depends(get_db)):
    """Always answers ok so callers cannot probe which emails exist"""
    account_service.request_password_reset(db, data.email)
    return OkResponse()


@router.post("/reset-password", response_model=OkResponse)
def reset_password(
    data: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    account_service.reset_password(
        db,
        new_password=data.new_password,
        token=data.token,
        email=data.email,
        code=data.code,
        client_ip=get_client_ip(request),
    )
    return OkResponse()


@router.post("/change-password", response_model=TokenResponse)
def change_password(
    data: ChangePasswordRequest,
    request: Request,
    response: Response,
    context: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    """
    Change the caller's password.

    All sessions and earlier access tokens stop working; the response
    carries a fresh access token.
    """
    result = account_service.change_password(
        db,
        context.user,
        context.claims,
        data.current_password,
        data.new_password,
        client_ip=get_client_ip(request),
    )
    response.headers["X-Password-Changed"] = "1"
    return _token_response(result)


@router.get("/me", response_model=UserResponse)
def get_me(context: AuthContext = Depends(get_auth_context)):
    """Get the caller's identity"""
    return UserResponse.from_user(context.user)


@router.post("/introspect", response_model=IntrospectionResponse)
def introspect(
    data: Optional[IntrospectionRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db)
):
    """
    Validate a token taken from the Authorization header or the body.

    Invalid, revoked and outdated tokens get 401 with a ``reason``.
    """
    token = header_token or (data.token.strip() if data and data.token else None)
    context = resolve_token(db, token)
    return IntrospectionResponse(valid=True, payload=context.claims)


@router.get("/.well-known/jwks.json")
def jwks():
    """Public keys for verifying RS256 access tokens"""
    return token_codec.jwks()
