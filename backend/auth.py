# auth.py — Authentication for TaskDesk
# Features:
# - bcrypt password hashing, password policy enforcement
# - JWT access / refresh / reset tokens with JTI for revocation
# - Credential gate: bearer token -> Actor, with typed failure reasons
# - Federated login with auto-provisioning
# - Default administrator bootstrap

import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import config
from accounts import AccountStore, AccountPatch
from database import get_db_session
from errors import AuthError, AuthFailure, ForbiddenError, InvalidCredentialsError, ValidationError
from models import User, UserRole, RevokedToken, enum_value
from policy import Actor

logger = logging.getLogger("taskdesk.auth")

# Raw header so that a bare token (no "Bearer" scheme) is accepted as well
bearer_scheme = APIKeyHeader(name="Authorization", auto_error=False, scheme_name="BearerToken")

# bcrypt only considers the first 72 bytes and newer releases refuse longer input
MAX_PASSWORD_BYTES = 72


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

def validate_password_strength(v: str) -> str:
    if len(v) < config.MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")
    if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


class UserRegister(BaseModel):
    email: EmailStr
    password: str
    display_name: str = ""

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(BaseModel):
    refresh_token: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    email: Optional[EmailStr] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    token: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


def actor_from_user(user: User) -> Actor:
    return Actor(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        role=enum_value(user.role),
    )


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name or "",
        "role": enum_value(user.role),
        "is_active": user.is_active,
        "auth_provider": user.auth_provider,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and identity operations"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        # Federated accounts carry an empty hash: password login always fails
        if not password_hash:
            return False
        encoded = password.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def create_reset_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token({"sub": user.id, "email": user.email}, "reset", delta)

    @staticmethod
    def verify_token(token: str, expected_type: Optional[str] = None) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
        except ExpiredSignatureError:
            raise AuthError(AuthFailure.EXPIRED)
        except JWTError:
            raise AuthError(AuthFailure.INVALID)

        if expected_type and payload.get("type") != expected_type:
            raise AuthError(AuthFailure.INVALID)
        if not payload.get("sub"):
            raise AuthError(AuthFailure.INVALID)
        return payload

    @staticmethod
    def issue_tokens(user: User) -> TokenResponse:
        token_data = {
            "sub": user.id,
            "email": user.email,
            "role": enum_value(user.role),
        }
        return TokenResponse(
            access_token=AuthService.create_access_token(token_data),
            refresh_token=AuthService.create_refresh_token(token_data),
            expires_in=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user=user_to_dict(user),
        )

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken.id).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.first() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        revoked = RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at)
        db.add(revoked)
        await db.commit()

    # --- Identity actions ---

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        display_name = user_data.display_name.strip() or user_data.email.split("@")[0]
        user = await AccountStore(db).create(
            email=user_data.email,
            password_hash=AuthService.hash_password(user_data.password),
            display_name=display_name,
            role=UserRole.USER,
        )
        logger.info(f"User registered: {user.id}")
        return user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> User:
        """Check a password login. Every failure raises the same error."""
        store = AccountStore(db)
        user = await store.get_by_email(email)

        if not user or not AuthService.verify_password(password, user.password_hash):
            logger.info("Login failed: bad credentials")
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.info(f"Login failed: account {user.id} is deactivated")
            raise InvalidCredentialsError()

        await store.touch_login(user)
        return user

    @staticmethod
    async def refresh(refresh_token: str, db: AsyncSession) -> User:
        payload = AuthService.verify_token(refresh_token, expected_type="refresh")
        jti = payload.get("jti")
        if jti and await AuthService.is_token_revoked(jti, db):
            raise AuthError(AuthFailure.INVALID)

        user = await AccountStore(db).get_by_id(payload["sub"])
        if not user:
            raise AuthError(AuthFailure.UNKNOWN_SUBJECT)
        if not user.is_active:
            raise AuthError(AuthFailure.DEACTIVATED)
        return user

    @staticmethod
    async def logout(token: str, db: AsyncSession) -> None:
        payload = AuthService.verify_token(extract_token(token), expected_type="access")
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        await AuthService.revoke_token(payload["jti"], payload["sub"], expires_at, db)
        logger.info(f"Token revoked for user {payload['sub']}")

    @staticmethod
    async def update_profile(actor: Actor, data: ProfileUpdate, db: AsyncSession) -> User:
        patch = AccountPatch(**data.model_dump(exclude_unset=True, exclude_none=True))
        if patch.display_name is not None:
            patch.display_name = patch.display_name.strip()
            if not patch.display_name:
                raise ValidationError("Display name cannot be empty")
        return await AccountStore(db).update(actor.id, patch)

    @staticmethod
    async def change_password(actor: Actor, data: PasswordChange, db: AsyncSession) -> None:
        store = AccountStore(db)
        user = await store.require(actor.id)
        if not AuthService.verify_password(data.current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        await store.update(user.id, AccountPatch(password_hash=AuthService.hash_password(data.new_password)))
        logger.info(f"Password changed for user {user.id}")

    @staticmethod
    async def forgot_password(email: str, db: AsyncSession) -> Optional[tuple]:
        """Returns (user, reset_token) when the account exists, else None"""
        user = await AccountStore(db).get_by_email(email)
        if not user or not user.is_active:
            return None
        return user, AuthService.create_reset_token(user)

    @staticmethod
    async def reset_password(data: PasswordReset, db: AsyncSession) -> User:
        payload = AuthService.verify_token(data.token, expected_type="reset")

        store = AccountStore(db)
        user = await store.get_by_id(payload["sub"])
        if not user:
            raise AuthError(AuthFailure.UNKNOWN_SUBJECT)
        # A token issued before an email change is no longer valid
        if user.email != payload.get("email"):
            raise AuthError(AuthFailure.INVALID)

        user = await store.update(user.id, AccountPatch(password_hash=AuthService.hash_password(data.new_password)))
        logger.info(f"Password reset for user {user.id}")
        return user

    @staticmethod
    async def federated_login(provider: str, email: str, display_name: str, db: AsyncSession) -> User:
        """Find or auto-provision the account behind a provider profile.

        Provisioned accounts get an empty credential, so password login
        against them fails until a password reset attaches one.
        """
        store = AccountStore(db)
        user = await store.get_by_email(email)
        if user is None:
            user = await store.create(
                email=email,
                password_hash="",
                display_name=display_name or email.split("@")[0],
                role=UserRole.USER,
                auth_provider=provider,
            )
            logger.info(f"Provisioned {provider} account {user.id}")
        elif not user.is_active:
            raise InvalidCredentialsError("Account is deactivated")

        await store.touch_login(user)
        return user

    @staticmethod
    async def ensure_default_admin(db: AsyncSession) -> Optional[User]:
        if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
            return None
        store = AccountStore(db)
        existing = await store.get_by_email(config.ADMIN_EMAIL)
        if existing:
            return existing
        admin = await store.create(
            email=config.ADMIN_EMAIL,
            password_hash=AuthService.hash_password(config.ADMIN_PASSWORD),
            display_name="Administrator",
            role=UserRole.ADMIN,
        )
        logger.info(f"Default administrator created: {admin.email}")
        return admin


# ============================================================
# CREDENTIAL GATE
# ============================================================

def extract_token(header_value: Optional[str]) -> Optional[str]:
    """Token from "Bearer <token>" or a bare token"""
    if not header_value:
        return None
    value = header_value.strip()
    scheme, _, rest = value.partition(" ")
    if rest and scheme.lower() == "bearer":
        value = rest.strip()
    return value or None


async def authenticate(raw_token: Optional[str], db: AsyncSession) -> Actor:
    """Resolve a presented access token to an Actor or raise AuthError"""
    token = extract_token(raw_token)
    if not token:
        raise AuthError(AuthFailure.MISSING)

    payload = AuthService.verify_token(token, expected_type="access")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise AuthError(AuthFailure.INVALID)

    user = await AccountStore(db).get_by_id(payload["sub"])
    if not user:
        raise AuthError(AuthFailure.UNKNOWN_SUBJECT)
    if not user.is_active:
        raise AuthError(AuthFailure.DEACTIVATED)

    return actor_from_user(user)


async def authenticate_optional(raw_token: Optional[str], db: AsyncSession) -> Actor:
    """Like authenticate, but any failure yields the anonymous actor"""
    try:
        return await authenticate(raw_token, db)
    except AuthError as e:
        if e.reason is not AuthFailure.MISSING:
            logger.debug(f"Optional authentication ignored: {e.reason.value}")
        return Actor.anonymous()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    token: Optional[str] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> Actor:
    return await authenticate(token, db)


async def require_admin(user: Actor = Depends(get_current_user)) -> Actor:
    if not user.is_admin:
        raise ForbiddenError("Access denied. Admin privileges required.")
    return user
