# routers/users.py — Administrator account management
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from accounts import AccountStore, AccountPatch
from auth import require_admin, user_to_dict
from database import get_db_session
from errors import ValidationError
from models import UserRole
from policy import Actor, Action, authorize

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class AdminUserUpdate(BaseModel):
    display_name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


# --- Endpoints ---

@router.get("")
async def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: str = Query(default="", max_length=100),
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Paginated account listing, searchable by display name and email"""
    authorize(user, Action.ACCOUNT_LIST)
    users, pagination = await AccountStore(db).list_accounts(page=page, limit=limit, search=search.strip())
    return {
        "success": True,
        "data": {
            "users": [user_to_dict(u) for u in users],
            "pagination": pagination,
        },
    }


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    authorize(user, Action.ACCOUNT_VIEW, target_id=user_id)
    account = await AccountStore(db).require(user_id)
    return {"success": True, "data": user_to_dict(account)}


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    data: AdminUserUpdate,
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    authorize(user, Action.ACCOUNT_UPDATE, target_id=user_id)
    if data.is_active is False:
        authorize(user, Action.ACCOUNT_DEACTIVATE, target_id=user_id)
    if data.display_name is not None and not data.display_name.strip():
        raise ValidationError("Display name cannot be empty")

    store = AccountStore(db)
    await store.require(user_id)
    account = await store.update(user_id, AccountPatch(**data.model_dump(exclude_unset=True)))
    return {
        "success": True,
        "message": "User updated successfully",
        "data": user_to_dict(account),
    }


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft delete: the account is deactivated, its records stay"""
    authorize(user, Action.ACCOUNT_DELETE, target_id=user_id)
    await AccountStore(db).deactivate(user_id)
    return {"success": True, "message": "User deactivated successfully"}


@router.patch("/{user_id}/toggle-status")
async def toggle_user_status(
    user_id: str,
    user: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    authorize(user, Action.ACCOUNT_TOGGLE, target_id=user_id)
    account = await AccountStore(db).toggle_active(user_id)
    state = "activated" if account.is_active else "deactivated"
    return {
        "success": True,
        "message": f"User {state} successfully",
        "data": user_to_dict(account),
    }
