"""Admin routes - user listing and account controls"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from nutriclinic.api.deps import get_client_ip, get_current_admin_user
from nutriclinic.core.database import get_db
from nutriclinic.models.user import User
from nutriclinic.schemas.user import RoleChangeRequest, UserListResponse, UserResponse
from nutriclinic.services.account_service import account_service
from nutriclinic.services.cache import TTLCache, get_user_list_cache

router = APIRouter()


@router.get("/users", response_model=UserListResponse)
def list_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    q: Optional[str] = Query(None, max_length=100),
    current_user: User = Depends(get_current_admin_user),
    cache: TTLCache = Depends(get_user_list_cache),
    db: Session = Depends(get_db)
):
    """
    List users, newest first

    Args:
        page: 1-based page number
        page_size: Users per page
        q: Case-insensitive filter on email or full name
    """
    params = {"page": page, "page_size": page_size, "q": q}
    hit, payload = cache.get(params)
    if hit:
        return UserListResponse(**{**payload, "cached": True})

    users, total = account_service.list_users(db, page=page, page_size=page_size, q=q)
    response = UserListResponse(
        items=[UserResponse.from_user(user) for user in users],
        total=total,
        page=page,
        page_size=page_size,
    )
    cache.set(params, response.model_dump())
    return response


@router.post("/users/{user_id}/force-logout")
def force_logout(
    user_id: str,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    cache: TTLCache = Depends(get_user_list_cache),
    db: Session = Depends(get_db)
):
    """Revoke every session and access token of a user"""
    revoked = account_service.force_logout(db, user_id, current_user, client_ip=get_client_ip(request))
    cache.invalidate()
    return {"ok": True, "sessions_revoked": revoked}


@router.patch("/users/{user_id}/role", response_model=UserResponse)
def change_role(
    user_id: str,
    data: RoleChangeRequest,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    cache: TTLCache = Depends(get_user_list_cache),
    db: Session = Depends(get_db)
):
    user = account_service.change_role(db, user_id, data.role, current_user, client_ip=get_client_ip(request))
    cache.invalidate()
    return UserResponse.from_user(user)


@router.post("/users/{user_id}/lock", response_model=UserResponse)
def lock_user(
    user_id: str,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    cache: TTLCache = Depends(get_user_list_cache),
    db: Session = Depends(get_db)
):
    """Lock an account; its sessions and tokens are revoked"""
    user = account_service.lock_account(db, user_id, current_user, client_ip=get_client_ip(request))
    cache.invalidate()
    return UserResponse.from_user(user)


@router.post("/users/{user_id}/unlock", response_model=UserResponse)
def unlock_user(
    user_id: str,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    cache: TTLCache = Depends(get_user_list_cache),
    db: Session = Depends(get_db)
):
    user = account_service.unlock_account(db, user_id, current_user, client_ip=get_client_ip(request))
    cache.invalidate()
    return UserResponse.from_user(user)
