# accounts.py — Identity store: persistence for account records
import logging
import math
from typing import Optional, List, Tuple

from pydantic import BaseModel
from sqlalchemy import select, func, delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConflictError, NotFoundError
from models import User, UserRole, contains_pattern, utcnow

logger = logging.getLogger("taskdesk.accounts")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountPatch(BaseModel):
    """Partial account update; only fields explicitly set are applied"""
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    password_hash: Optional[str] = None


class AccountStore:
    """Account lookups and writes over one session.

    Every write commits. Email uniqueness is checked before the write and
    backed by the unique index, so a racing insert still surfaces as a
    ConflictError.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def require(self, user_id: str) -> User:
        user = await self.get_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def email_exists(self, email: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(User.id).where(User.email == normalize_email(email))
        if exclude_id:
            stmt = stmt.where(User.id != exclude_id)
        result = await self.db.execute(stmt.limit(1))
        return result.first() is not None

    async def create(
        self,
        email: str,
        password_hash: str,
        display_name: str,
        role: UserRole = UserRole.USER,
        auth_provider: str = "local",
    ) -> User:
        if await self.email_exists(email):
            raise ConflictError("Email already exists")

        user = User(
            email=normalize_email(email),
            password_hash=password_hash,
            display_name=display_name,
            role=role,
            auth_provider=auth_provider,
            is_active=True,
        )
        self.db.add(user)
        await self._commit_unique()
        await self.db.refresh(user)
        logger.info(f"Account created: {user.id} ({auth_provider})")
        return user

    async def update(self, user_id: str, patch: AccountPatch) -> User:
        user = await self.require(user_id)
        fields = patch.model_dump(exclude_unset=True)

        if "email" in fields and fields["email"] is not None:
            fields["email"] = normalize_email(fields["email"])
            if fields["email"] != user.email and await self.email_exists(fields["email"], exclude_id=user.id):
                raise ConflictError("Email already exists")

        for name, value in fields.items():
            if value is None:
                # Account columns are all NOT NULL; an explicit null means "leave as is"
                continue
            setattr(user, name, value)

        await self._commit_unique()
        await self.db.refresh(user)
        return user

    async def deactivate(self, user_id: str) -> User:
        """Soft delete: the record stays, authentication stops"""
        user = await self.require(user_id)
        user.is_active = False
        await self.db.commit()
        await self.db.refresh(user)
        logger.info(f"Account deactivated: {user_id}")
        return user

    async def toggle_active(self, user_id: str) -> User:
        user = await self.require(user_id)
        await self.db.execute(
            update(User).where(User.id == user_id).values(is_active=~User.is_active, updated_at=utcnow())
        )
        await self.db.commit()
        await self.db.refresh(user)
        logger.info(f"Account {user_id} is_active -> {user.is_active}")
        return user

    async def touch_login(self, user: User) -> None:
        user.last_login_at = utcnow()
        await self.db.commit()

    async def hard_delete(self, user_id: str) -> bool:
        """Erase the record. Created tasks cascade, assignments fall back to null."""
        result = await self.db.execute(delete(User).where(User.id == user_id))
        await self.db.commit()
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.warning(f"Account hard-deleted: {user_id}")
        return deleted

    async def list_accounts(self, page: int = 1, limit: int = 10, search: str = "") -> Tuple[List[User], dict]:
        stmt = select(User)
        count_stmt = select(func.count(User.id))
        if search:
            pattern = contains_pattern(search)
            condition = or_(
                User.display_name.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
            )
            stmt = stmt.where(condition)
            count_stmt = count_stmt.where(condition)

        stmt = stmt.order_by(User.created_at.asc()).offset((page - 1) * limit).limit(limit)
        users = (await self.db.execute(stmt)).scalars().all()
        total = (await self.db.execute(count_stmt)).scalar() or 0
        return list(users), {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        }

    async def _commit_unique(self):
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Email already exists")
