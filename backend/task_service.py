# task_service.py — Task lifecycle: CRUD, status/assignment transitions, statistics
#
# Every mutation loads the task, asks the policy for a verdict, applies the
# change and then notifies the acting account.

import math
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Any, Dict

from pydantic import BaseModel, Field
from sqlalchemy import select, func, delete, update, or_, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from accounts import AccountStore
from errors import NotFoundError, UnknownReferenceError, ValidationError
from models import (
    Task, User, TaskStatus, TaskPriority, NotificationType, CLOSED_STATUSES,
    contains_pattern, enum_value, utcnow,
)
from notifier import NotificationSink
from policy import Actor, Action, authorize

logger = logging.getLogger("taskdesk.tasks")


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class TaskPatch(BaseModel):
    """Partial update. Fields left out of the payload are untouched;
    fields sent as null are applied as null."""
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


SORT_FIELDS = ("created_at", "updated_at", "due_date", "priority", "status", "title")
DEFAULT_SORT = "created_at"


class TaskFilters(BaseModel):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[str] = None
    creator_id: Optional[str] = None
    search: Optional[str] = None
    due_from: Optional[datetime] = None
    due_to: Optional[datetime] = None
    sort_by: Optional[str] = None
    sort_order: Optional[str] = None


class Relationship(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    ALL = "all"


class Page(BaseModel):
    items: List[Any]
    page: int
    limit: int
    total: int
    total_pages: int

    def pagination(self) -> Dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


# ============================================================
# HELPERS
# ============================================================

def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive input is taken to be UTC already"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _ts(dt) -> Optional[str]:
    return as_utc(dt).isoformat() if dt else None


def _person(user: Optional[User]) -> Optional[dict]:
    if user is None:
        return None
    return {"id": user.id, "display_name": user.display_name, "email": user.email}


def task_to_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": enum_value(t.status),
        "priority": enum_value(t.priority),
        "creator_id": t.creator_id,
        "assignee_id": t.assignee_id,
        "creator": _person(t.creator),
        "assignee": _person(t.assignee),
        "due_date": _ts(t.due_date),
        "completed_at": _ts(t.completed_at),
        "created_at": _ts(t.created_at),
        "updated_at": _ts(t.updated_at),
    }


def _completed_at_for(status: TaskStatus, current: Optional[datetime]) -> Optional[datetime]:
    """completed_at is non-null exactly when the status is completed"""
    if status == TaskStatus.COMPLETED:
        return current or utcnow()
    return None


def _rank(column, members) -> Any:
    # Enum columns sort by declaration order, not by stored name
    return case(*[(column == m, i) for i, m in enumerate(members)])


def _sort_column(sort_by: Optional[str]):
    key = sort_by if sort_by in SORT_FIELDS else DEFAULT_SORT
    if key == "priority":
        return _rank(Task.priority, list(TaskPriority))
    if key == "status":
        return _rank(Task.status, list(TaskStatus))
    return getattr(Task, key)


def _check_page(page: int, limit: int):
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive integers")


def _parse_status(value) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Invalid status. Must be one of: {allowed}")


# ============================================================
# SERVICE
# ============================================================

class TaskService:
    """Task operations for one request"""

    def __init__(self, db: AsyncSession, sink: Optional[NotificationSink] = None):
        self.db = db
        self.sink = sink
        self.accounts = AccountStore(db)

    def _query(self):
        return select(Task).options(selectinload(Task.creator), selectinload(Task.assignee))

    async def _load(self, task_id: str, refresh: bool = False) -> Task:
        stmt = self._query().where(Task.id == task_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        task = (await self.db.execute(stmt)).scalar_one_or_none()
        if not task:
            raise NotFoundError("Task not found")
        return task

    async def _check_assignee(self, assignee_id: Optional[str]):
        if assignee_id is not None and not await self.accounts.get_by_id(assignee_id):
            raise UnknownReferenceError("Assigned user does not exist")

    async def _write(self, task: Task, changes: Dict[str, Any]) -> Task:
        """Apply changes with a single UPDATE and return the stored row.

        If the row was deleted concurrently the UPDATE matches nothing; the
        write still counts as done and the loaded task is returned detached,
        carrying the new values.
        """
        changes["updated_at"] = utcnow()
        await self.db.execute(update(Task).where(Task.id == task.id).values(**changes))
        await self.db.commit()
        try:
            return await self._load(task.id, refresh=True)
        except NotFoundError:
            logger.warning(f"Task {task.id} was deleted while being written")
        self.db.expunge(task)
        for name, value in changes.items():
            set_committed_value(task, name, value)
        if "assignee_id" in changes:
            assignee = await self.accounts.get_by_id(changes["assignee_id"]) if changes["assignee_id"] else None
            set_committed_value(task, "assignee", assignee)
        return task

    async def _notify(self, actor: Actor, message: str, type: NotificationType):
        if self.sink is not None:
            await self.sink.emit(actor.id, message, type)

    async def _page(self, stmt, count_stmt, page: int, limit: int) -> Page:
        total = (await self.db.execute(count_stmt)).scalar() or 0
        rows = (await self.db.execute(stmt.offset((page - 1) * limit).limit(limit))).scalars().all()
        return Page(
            items=list(rows),
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit),
        )

    # --- Create / read ---

    async def create(self, data: TaskCreate, actor: Actor) -> Task:
        title = (data.title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        await self._check_assignee(data.assignee_id)

        status = data.status or TaskStatus.PENDING
        task = Task(
            title=title,
            description=data.description,
            status=status,
            priority=data.priority or TaskPriority.MEDIUM,
            creator_id=actor.id,
            assignee_id=data.assignee_id,
            due_date=as_utc(data.due_date),
            completed_at=_completed_at_for(status, None),
        )
        self.db.add(task)
        await self.db.commit()

        task = await self._load(task.id, refresh=True)
        logger.info(f"Task {task.id} created by {actor.id}")
        await self._notify(actor, f"New task created: {task.title}", NotificationType.TASK_CREATED)
        return task

    async def get(self, task_id: str, actor: Actor) -> Task:
        task = await self._load(task_id)
        authorize(actor, Action.TASK_VIEW, task=task)
        return task

    async def list_tasks(self, actor: Actor, filters: TaskFilters, page: int = 1, limit: int = 10) -> Page:
        """Filtered, sorted, paginated listing. No visibility filter is applied."""
        _check_page(page, limit)
        conditions = []
        if filters.status:
            conditions.append(Task.status == filters.status)
        if filters.priority:
            conditions.append(Task.priority == filters.priority)
        if filters.assignee_id:
            conditions.append(Task.assignee_id == filters.assignee_id)
        if filters.creator_id:
            conditions.append(Task.creator_id == filters.creator_id)
        if filters.search:
            pattern = contains_pattern(filters.search)
            conditions.append(
                or_(Task.title.ilike(pattern, escape="\\"), Task.description.ilike(pattern, escape="\\"))
            )
        if filters.due_from:
            conditions.append(Task.due_date >= as_utc(filters.due_from))
        if filters.due_to:
            conditions.append(Task.due_date <= as_utc(filters.due_to))

        column = _sort_column(filters.sort_by)
        order = SortOrder.ASC if (filters.sort_order or "").lower() == "asc" else SortOrder.DESC
        ordering = column.asc() if order == SortOrder.ASC else column.desc()

        stmt = self._query().where(*conditions).order_by(ordering, Task.id)
        count_stmt = select(func.count(Task.id)).where(*conditions)
        return await self._page(stmt, count_stmt, page, limit)

    async def list_for_user(
        self,
        actor: Actor,
        relationship: Relationship = Relationship.ALL,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        _check_page(page, limit)
        if relationship == Relationship.CREATED:
            conditions = [Task.creator_id == actor.id]
        elif relationship == Relationship.ASSIGNED:
            conditions = [Task.assignee_id == actor.id]
        else:
            conditions = [or_(Task.creator_id == actor.id, Task.assignee_id == actor.id)]
        if status:
            conditions.append(Task.status == status)
        if priority:
            conditions.append(Task.priority == priority)

        stmt = self._query().where(*conditions).order_by(Task.created_at.desc(), Task.id)
        count_stmt = select(func.count(Task.id)).where(*conditions)
        return await self._page(stmt, count_stmt, page, limit)

    # --- Mutations ---

    async def update(self, task_id: str, actor: Actor, patch: TaskPatch) -> Task:
        task = await self._load(task_id)
        authorize(actor, Action.TASK_UPDATE, task=task)

        fields = patch.model_fields_set
        changes = {}
        if "assignee_id" in fields and patch.assignee_id != task.assignee_id:
            authorize(actor, Action.TASK_ASSIGN, task=task)
            await self._check_assignee(patch.assignee_id)
            changes["assignee_id"] = patch.assignee_id

        if "title" in fields:
            changes["title"] = (patch.title or "").strip()
            if not changes["title"]:
                raise ValidationError("Title cannot be empty")
        if "description" in fields:
            changes["description"] = patch.description
        if "priority" in fields:
            if patch.priority is None:
                raise ValidationError("Priority cannot be null")
            changes["priority"] = patch.priority
        if "due_date" in fields:
            changes["due_date"] = as_utc(patch.due_date)
            if changes["due_date"] is not None and changes["due_date"] < datetime.now(timezone.utc):
                raise ValidationError("Due date cannot be in the past")
        if "status" in fields:
            if patch.status is None:
                raise ValidationError("Status cannot be null")
            changes["status"] = patch.status

        # Nothing is written until every field has been validated
        status = TaskStatus(changes.get("status", task.status))
        changes["completed_at"] = _completed_at_for(status, task.completed_at)

        task = await self._write(task, changes)
        logger.info(f"Task {task_id} updated by {actor.id}: {sorted(fields)}")
        await self._notify(
            actor,
            f"Task updated: {task.title} by {actor.display_name or actor.email}",
            NotificationType.TASK_UPDATED,
        )
        return task

    async def delete(self, task_id: str, actor: Actor) -> None:
        task = await self._load(task_id)
        authorize(actor, Action.TASK_DELETE, task=task)

        title = task.title
        await self.db.execute(delete(Task).where(Task.id == task_id))
        await self.db.commit()
        logger.info(f"Task {task_id} deleted by {actor.id}")
        await self._notify(actor, f"Task deleted: {title}", NotificationType.TASK_DELETED)

    async def set_status(self, task_id: str, actor: Actor, status) -> Task:
        new_status = _parse_status(status)
        task = await self._load(task_id)
        authorize(actor, Action.TASK_UPDATE_STATUS, task=task)

        task = await self._write(task, {
            "status": new_status,
            "completed_at": _completed_at_for(new_status, task.completed_at),
        })
        await self._notify(
            actor,
            f"Task status changed: {task.title} is now {new_status.value}",
            NotificationType.TASK_STATUS,
        )
        return task

    async def assign(self, task_id: str, actor: Actor, assignee_id: Optional[str]) -> Task:
        task = await self._load(task_id)
        authorize(actor, Action.TASK_ASSIGN, task=task)
        await self._check_assignee(assignee_id)

        task = await self._write(task, {"assignee_id": assignee_id})
        if task.assignee is not None:
            message = f"Task assigned: {task.title} to {task.assignee.display_name or task.assignee.email}"
        else:
            message = f"Task unassigned: {task.title}"
        await self._notify(actor, message, NotificationType.TASK_ASSIGNED)
        return task

    # --- Reporting ---

    async def statistics(self, user_id: Optional[str] = None) -> dict:
        """Counts by status and priority plus overdue; global when user_id is None"""
        scope = []
        if user_id is not None:
            scope.append(or_(Task.creator_id == user_id, Task.assignee_id == user_id))

        by_status = {s.value: 0 for s in TaskStatus}
        rows = await self.db.execute(select(Task.status, func.count(Task.id)).where(*scope).group_by(Task.status))
        for status, count in rows.all():
            by_status[enum_value(status)] = count

        by_priority = {p.value: 0 for p in TaskPriority}
        rows = await self.db.execute(select(Task.priority, func.count(Task.id)).where(*scope).group_by(Task.priority))
        for priority, count in rows.all():
            by_priority[enum_value(priority)] = count

        start_of_today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        overdue_stmt = select(func.count(Task.id)).where(
            *scope,
            Task.due_date.is_not(None),
            Task.due_date < start_of_today,
            Task.status.not_in(CLOSED_STATUSES),
        )
        overdue = (await self.db.execute(overdue_stmt)).scalar() or 0

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_priority": by_priority,
            "overdue": overdue,
        }
