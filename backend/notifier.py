# notifier.py — Fire-and-forget notification records and outbound mail
#
# Emission runs after the response through FastAPI BackgroundTasks, on its own
# session. A failed write is logged and dropped: it never changes the outcome
# of the action that triggered it.

import math
import logging
from abc import ABC, abstractmethod
from typing import Optional, List, Tuple

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from database import Database, get_database
from models import Notification, NotificationType, User, enum_value

logger = logging.getLogger("taskdesk.notifier")


class NotificationSink:
    """Records notification events for an account"""

    def __init__(self, database: Database, background: Optional[BackgroundTasks] = None):
        self.database = database
        self.background = background

    async def emit(self, recipient_id: str, message: str, type: NotificationType) -> None:
        if self.background is not None:
            self.background.add_task(self._deliver, recipient_id, message, enum_value(type))
        else:
            await self._deliver(recipient_id, message, enum_value(type))

    async def _deliver(self, recipient_id: str, message: str, type: str) -> None:
        try:
            async with self.database.session() as db:
                db.add(Notification(user_id=recipient_id, message=message, type=type))
        except Exception as e:
            logger.error(f"Notification for {recipient_id} dropped: {e}")


async def list_notifications(db: AsyncSession, page: int = 1, limit: int = 20) -> Tuple[List[dict], dict]:
    """All notifications, newest first, with the recipient's email"""
    total = (await db.execute(select(func.count(Notification.id)))).scalar() or 0
    stmt = (
        select(Notification, User.email)
        .join(User, User.id == Notification.user_id)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = (await db.execute(stmt)).all()
    items = [
        {
            "id": n.id,
            "user_id": n.user_id,
            "user_email": email,
            "message": n.message,
            "type": n.type,
            "created_at": n.created_at.isoformat() if n.created_at else None,
        }
        for n, email in rows
    ]
    return items, {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit),
    }


async def delete_notifications_for(db: AsyncSession, recipient_id: str) -> int:
    result = await db.execute(delete(Notification).where(Notification.user_id == recipient_id))
    await db.commit()
    return result.rowcount or 0


# ============================================================
# MAIL
# ============================================================

class Mailer(ABC):
    """Outbound mail collaborator. Template rendering and delivery live elsewhere."""

    @abstractmethod
    async def send_welcome(self, email: str, display_name: str) -> None:
        ...

    @abstractmethod
    async def send_password_reset(self, email: str, token: str) -> None:
        ...


class LoggingMailer(Mailer):
    """Writes outgoing mail to the log instead of sending it"""

    async def send_welcome(self, email: str, display_name: str) -> None:
        logger.info(f"[mail] welcome -> {email} ({display_name})")

    async def send_password_reset(self, email: str, token: str) -> None:
        # The token grants a password change; keep it out of the log
        logger.info(f"[mail] password reset link -> {email}")


async def _send_safely(send, *args) -> None:
    try:
        await send(*args)
    except Exception as e:
        logger.error(f"Mail delivery failed ({getattr(send, '__name__', send)}): {e}")


def dispatch_mail(background: BackgroundTasks, send, *args) -> None:
    """Queue a mail call to run after the response"""
    background.add_task(_send_safely, send, *args)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def get_notification_sink(
    background_tasks: BackgroundTasks,
    database: Database = Depends(get_database),
) -> NotificationSink:
    return NotificationSink(database, background_tasks)


def get_mailer(request: Request) -> Mailer:
    mailer = getattr(request.app.state, "mailer", None)
    return mailer or LoggingMailer()
