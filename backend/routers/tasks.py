# routers/tasks.py — Task CRUD, status and assignment transitions, statistics
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db_session
from models import TaskStatus, TaskPriority
from notifier import NotificationSink, get_notification_sink
from policy import Actor
from task_service import (
    TaskService, TaskCreate, TaskPatch, TaskFilters, Relationship, Page, task_to_dict,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# --- Schemas ---

class StatusChange(BaseModel):
    status: str


class AssignRequest(BaseModel):
    assignee_id: Optional[str] = None


def get_task_service(
    db: AsyncSession = Depends(get_db_session),
    sink: NotificationSink = Depends(get_notification_sink),
) -> TaskService:
    return TaskService(db, sink)


def _page_out(page: Page) -> dict:
    return {
        "tasks": [task_to_dict(t) for t in page.items],
        "pagination": page.pagination(),
    }


# ============================================================
# COLLECTION
# ============================================================

@router.post("", status_code=201)
async def create_task(
    data: TaskCreate,
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    task = await service.create(data, user)
    return {"success": True, "message": "Task created successfully", "data": task_to_dict(task)}


@router.get("")
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    assignee_id: Optional[str] = Query(None),
    creator_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    due_from: Optional[datetime] = Query(None),
    due_to: Optional[datetime] = Query(None),
    sort_by: Optional[str] = Query(None),
    sort_order: Optional[str] = Query(None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    filters = TaskFilters(
        status=status, priority=priority, assignee_id=assignee_id, creator_id=creator_id,
        search=search, due_from=due_from, due_to=due_to,
        sort_by=sort_by, sort_order=sort_order,
    )
    result = await service.list_tasks(user, filters, page=page, limit=limit)
    return {"success": True, "data": _page_out(result)}


@router.get("/statistics")
async def task_statistics(
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    """Global figures for administrators, the caller's own tasks otherwise"""
    stats = await service.statistics(None if user.is_admin else user.id)
    return {"success": True, "data": stats}


@router.get("/my-tasks")
async def my_tasks(
    type: Relationship = Query(default=Relationship.ALL),
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    result = await service.list_for_user(user, type, status=status, priority=priority, page=page, limit=limit)
    return {"success": True, "data": _page_out(result)}


# ============================================================
# SINGLE TASK
# ============================================================

@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    task = await service.get(task_id, user)
    return {"success": True, "data": task_to_dict(task)}


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    data: TaskPatch,
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    task = await service.update(task_id, user, data)
    return {"success": True, "message": "Task updated successfully", "data": task_to_dict(task)}


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    await service.delete(task_id, user)
    return {"success": True, "message": "Task deleted successfully"}


@router.patch("/{task_id}/status")
async def update_task_status(
    task_id: str,
    data: StatusChange,
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    task = await service.set_status(task_id, user, data.status)
    return {"success": True, "message": "Task status updated successfully", "data": task_to_dict(task)}


@router.patch("/{task_id}/assign")
async def assign_task(
    task_id: str,
    data: AssignRequest,
    user: Actor = Depends(get_current_user),
    service: TaskService = Depends(get_task_service),
):
    task = await service.assign(task_id, user, data.assignee_id)
    return {"success": True, "message": "Task assigned successfully", "data": task_to_dict(task)}
