# routers/auth.py — Registration, login, token lifecycle and self-service profile
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, RefreshRequest, ProfileUpdate,
    PasswordChange, ForgotPasswordRequest, PasswordReset,
    bearer_scheme, get_current_user, user_to_dict,
)
from accounts import AccountStore
from database import get_db_session
from notifier import Mailer, dispatch_mail, get_mailer
from policy import Actor, Action, authorize

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


@router.post("/register", status_code=201)
async def register(
    user_data: UserRegister,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    mailer: Mailer = Depends(get_mailer),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    dispatch_mail(background_tasks, mailer.send_welcome, user.email, user.display_name)
    return {
        "success": True,
        "message": "User registered successfully",
        "data": AuthService.issue_tokens(user).model_dump(),
    }


@router.post("/login")
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    return {
        "success": True,
        "message": "Login successful",
        "data": AuthService.issue_tokens(user).model_dump(),
    }


@router.post("/refresh")
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair"""
    user = await AuthService.refresh(refresh_req.refresh_token, db)
    return {"success": True, "data": AuthService.issue_tokens(user).model_dump()}


@router.post("/logout")
async def logout(
    user: Actor = Depends(get_current_user),
    token: Optional[str] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke the access token used for this request"""
    await AuthService.logout(token, db)
    return {"success": True, "message": "Logged out"}


@router.get("/me")
async def get_profile(
    user: Actor = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    authorize(user, Action.ACCOUNT_VIEW, target_id=user.id)
    account = await AccountStore(db).require(user.id)
    return {"success": True, "data": user_to_dict(account)}


@router.put("/me")
async def update_profile(
    data: ProfileUpdate,
    user: Actor = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    authorize(user, Action.ACCOUNT_UPDATE, target_id=user.id)
    account = await AuthService.update_profile(user, data, db)
    return {
        "success": True,
        "message": "Profile updated successfully",
        "data": user_to_dict(account),
    }


@router.put("/change-password")
async def change_password(
    data: PasswordChange,
    user: Actor = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await AuthService.change_password(user, data, db)
    return {"success": True, "message": "Password changed successfully"}


@router.post("/forgot-password")
async def forgot_password(
    data: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    mailer: Mailer = Depends(get_mailer),
):
    """Always answers the same way, whether or not the account exists"""
    issued = await AuthService.forgot_password(data.email, db)
    if issued:
        account, token = issued
        dispatch_mail(background_tasks, mailer.send_password_reset, account.email, token)
    return {
        "success": True,
        "message": "If an account exists for that email, a reset link has been sent",
    }


@router.post("/reset-password")
async def reset_password(
    data: PasswordReset,
    db: AsyncSession = Depends(get_db_session),
):
    await AuthService.reset_password(data, db)
    return {"success": True, "message": "Password has been reset successfully"}
