# tests/test_task_service.py — Task lifecycle rules exercised without HTTP
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, select

from errors import ForbiddenError, NotFoundError, UnknownReferenceError, ValidationError
from models import Notification, Task, TaskStatus, TaskPriority
from notifier import NotificationSink
from task_service import TaskService, TaskCreate, TaskPatch, TaskFilters, Relationship
from tests.conftest import actor_for


@pytest.fixture
def service(db_session, database):
    return TaskService(db_session, NotificationSink(database))


@pytest.mark.asyncio
class TestCreate:
    async def test_defaults(self, service, test_user):
        task = await service.create(TaskCreate(title="Ship release"), actor_for(test_user))
        assert task.status == TaskStatus.PENDING
        assert task.priority == TaskPriority.MEDIUM
        assert task.completed_at is None
        assert task.creator.id == test_user.id

    async def test_title_is_trimmed(self, service, test_user):
        task = await service.create(TaskCreate(title="  padded  "), actor_for(test_user))
        assert task.title == "padded"

    async def test_blank_title(self, service, test_user):
        with pytest.raises(ValidationError):
            await service.create(TaskCreate(title=""), actor_for(test_user))

    async def test_unknown_assignee(self, service, test_user):
        with pytest.raises(UnknownReferenceError):
            await service.create(TaskCreate(title="x", assignee_id="missing"), actor_for(test_user))

    async def test_notification_goes_to_actor(self, service, test_user, db_session):
        await service.create(TaskCreate(title="Notify me"), actor_for(test_user))
        rows = (await db_session.execute(select(Notification))).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == test_user.id


@pytest.mark.asyncio
class TestUpdate:
    async def test_stranger_forbidden(self, service, test_user, other_user):
        task = await service.create(TaskCreate(title="Private"), actor_for(test_user))
        with pytest.raises(ForbiddenError):
            await service.update(task.id, actor_for(other_user), TaskPatch(title="Mine now"))

    async def test_missing_task(self, service, test_user):
        with pytest.raises(NotFoundError):
            await service.update("missing", actor_for(test_user), TaskPatch(title="x"))

    async def test_absent_fields_untouched(self, service, test_user):
        task = await service.create(
            TaskCreate(title="Keep", description="notes", priority=TaskPriority.HIGH),
            actor_for(test_user),
        )
        updated = await service.update(task.id, actor_for(test_user), TaskPatch(title="Renamed"))
        assert updated.title == "Renamed"
        assert updated.description == "notes"
        assert updated.priority == TaskPriority.HIGH

    async def test_explicit_null_applied(self, service, test_user):
        task = await service.create(TaskCreate(title="Keep", description="notes"), actor_for(test_user))
        updated = await service.update(task.id, actor_for(test_user), TaskPatch(description=None))
        assert updated.description is None

    async def test_null_title_rejected(self, service, test_user):
        task = await service.create(TaskCreate(title="Keep"), actor_for(test_user))
        with pytest.raises(ValidationError):
            await service.update(task.id, actor_for(test_user), TaskPatch(title=None))

    async def test_past_due_date(self, service, test_user):
        task = await service.create(TaskCreate(title="Late"), actor_for(test_user))
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        with pytest.raises(ValidationError):
            await service.update(task.id, actor_for(test_user), TaskPatch(due_date=past))

    async def test_naive_due_date_taken_as_utc(self, service, test_user):
        task = await service.create(TaskCreate(title="Soon"), actor_for(test_user))
        naive = datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0) + timedelta(days=2)
        updated = await service.update(task.id, actor_for(test_user), TaskPatch(due_date=naive))
        assert updated.due_date.replace(tzinfo=None) == naive

    async def test_same_assignee_needs_no_assign_verdict(self, service, test_user, other_user):
        task = await service.create(TaskCreate(title="t", assignee_id=other_user.id), actor_for(test_user))
        updated = await service.update(
            task.id, actor_for(test_user), TaskPatch(assignee_id=other_user.id, title="t2"),
        )
        assert updated.title == "t2"

    async def test_status_through_update_rederives_completed_at(self, service, test_user):
        task = await service.create(TaskCreate(title="t"), actor_for(test_user))
        done = await service.update(task.id, actor_for(test_user), TaskPatch(status=TaskStatus.COMPLETED))
        assert done.completed_at is not None
        reopened = await service.update(task.id, actor_for(test_user), TaskPatch(status=TaskStatus.PENDING))
        assert reopened.completed_at is None


@pytest.mark.asyncio
class TestTransitions:
    @pytest.mark.parametrize("status", ["pending", "in_progress", "cancelled"])
    async def test_leaving_completed_clears_stamp(self, service, test_user, status):
        task = await service.create(TaskCreate(title="t", status=TaskStatus.COMPLETED), actor_for(test_user))
        assert task.completed_at is not None
        moved = await service.set_status(task.id, actor_for(test_user), status)
        assert moved.completed_at is None

    async def test_cancelled_can_be_reopened(self, service, test_user):
        task = await service.create(TaskCreate(title="t", status=TaskStatus.CANCELLED), actor_for(test_user))
        moved = await service.set_status(task.id, actor_for(test_user), "in_progress")
        assert moved.status == TaskStatus.IN_PROGRESS

    async def test_invalid_status(self, service, test_user):
        task = await service.create(TaskCreate(title="t"), actor_for(test_user))
        with pytest.raises(ValidationError):
            await service.set_status(task.id, actor_for(test_user), "done")

    async def test_assign_and_clear(self, service, test_user, other_user, admin_user):
        task = await service.create(TaskCreate(title="t"), actor_for(test_user))
        assigned = await service.assign(task.id, actor_for(admin_user), other_user.id)
        assert assigned.assignee.id == other_user.id
        cleared = await service.assign(task.id, actor_for(admin_user), None)
        assert cleared.assignee is None

    async def test_assign_forbidden_for_creator(self, service, test_user, other_user):
        task = await service.create(TaskCreate(title="t"), actor_for(test_user))
        with pytest.raises(ForbiddenError):
            await service.assign(task.id, actor_for(test_user), other_user.id)

    async def test_assign_unknown(self, service, test_user, admin_user):
        task = await service.create(TaskCreate(title="t"), actor_for(test_user))
        with pytest.raises(UnknownReferenceError):
            await service.assign(task.id, actor_for(admin_user), "ghost")

    async def test_delete_by_assignee_forbidden(self, service, test_user, other_user, db_session):
        task = await service.create(TaskCreate(title="t", assignee_id=other_user.id), actor_for(test_user))
        with pytest.raises(ForbiddenError):
            await service.delete(task.id, actor_for(other_user))
        await service.delete(task.id, actor_for(test_user))
        remaining = (await db_session.execute(select(Task.id))).all()
        assert remaining == []


def delete_after_first_load(service, database):
    """Remove the task from a second session right after the service reads it"""
    load = service._load

    async def load_then_delete(task_id, refresh=False):
        task = await load(task_id, refresh)
        if not refresh:
            async with database.session() as other:
                await other.execute(delete(Task).where(Task.id == task_id))
        return task

    service._load = load_then_delete


@pytest.mark.asyncio
class TestConcurrentDelete:
    async def test_status_change_succeeds(self, service, database, test_user, db_session):
        task = await service.create(TaskCreate(title="Doomed"), actor_for(test_user))
        delete_after_first_load(service, database)

        moved = await service.set_status(task.id, actor_for(test_user), "completed")
        assert moved.status == TaskStatus.COMPLETED
        assert moved.completed_at is not None
        assert (await db_session.execute(select(Task.id))).all() == []

    async def test_update_succeeds(self, service, database, test_user):
        task = await service.create(TaskCreate(title="Doomed"), actor_for(test_user))
        delete_after_first_load(service, database)

        updated = await service.update(task.id, actor_for(test_user), TaskPatch(title="Renamed"))
        assert updated.title == "Renamed"
        assert updated.creator.id == test_user.id

    async def test_assign_succeeds(self, service, database, test_user, other_user, admin_user):
        task = await service.create(TaskCreate(title="Doomed"), actor_for(test_user))
        delete_after_first_load(service, database)

        assigned = await service.assign(task.id, actor_for(admin_user), other_user.id)
        assert assigned.assignee_id == other_user.id
        assert assigned.assignee.id == other_user.id


@pytest.mark.asyncio
class TestListing:
    async def test_priority_sorts_by_rank(self, service, test_user):
        for p in (TaskPriority.URGENT, TaskPriority.LOW, TaskPriority.HIGH, TaskPriority.MEDIUM):
            await service.create(TaskCreate(title=p.value, priority=p), actor_for(test_user))
        page = await service.list_tasks(
            actor_for(test_user), TaskFilters(sort_by="priority", sort_order="asc"), page=1, limit=10,
        )
        assert [t.title for t in page.items] == ["low", "medium", "high", "urgent"]

    async def test_due_date_range_inclusive(self, service, test_user):
        base = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=10)
        for offset in (0, 1, 2, 3):
            await service.create(
                TaskCreate(title=f"d{offset}", due_date=base + timedelta(days=offset)),
                actor_for(test_user),
            )
        page = await service.list_tasks(
            actor_for(test_user),
            TaskFilters(due_from=base + timedelta(days=1), due_to=base + timedelta(days=2), sort_by="due_date",
                        sort_order="asc"),
        )
        assert [t.title for t in page.items] == ["d1", "d2"]

    async def test_total_pages(self, service, test_user):
        for i in range(7):
            await service.create(TaskCreate(title=f"t{i}"), actor_for(test_user))
        page = await service.list_tasks(actor_for(test_user), TaskFilters(), page=1, limit=3)
        assert page.total == 7
        assert page.total_pages == 3
        empty = await service.list_tasks(actor_for(test_user), TaskFilters(), page=4, limit=3)
        assert empty.items == []

    async def test_search_wildcards_are_literal(self, service, test_user):
        for title in ("50% done", "500 items", "a_b", "axb"):
            await service.create(TaskCreate(title=title), actor_for(test_user))
        percent = await service.list_tasks(actor_for(test_user), TaskFilters(search="50%"))
        assert [t.title for t in percent.items] == ["50% done"]
        underscore = await service.list_tasks(actor_for(test_user), TaskFilters(search="a_b"))
        assert [t.title for t in underscore.items] == ["a_b"]

    async def test_invalid_page(self, service, test_user):
        with pytest.raises(ValidationError):
            await service.list_tasks(actor_for(test_user), TaskFilters(), page=0, limit=3)

    async def test_list_for_user_relationships(self, service, test_user, other_user):
        await service.create(TaskCreate(title="created"), actor_for(test_user))
        await service.create(TaskCreate(title="assigned", assignee_id=test_user.id), actor_for(other_user))
        page = await service.list_for_user(actor_for(test_user), Relationship.ASSIGNED)
        assert [t.title for t in page.items] == ["assigned"]
        page = await service.list_for_user(actor_for(test_user), Relationship.ALL)
        assert page.total == 2


@pytest.mark.asyncio
class TestStatistics:
    async def test_overdue_counts_open_tasks_only(self, service, test_user, db_session):
        actor = actor_for(test_user)
        await service.create(TaskCreate(title="late"), actor)
        await service.create(TaskCreate(title="late but done", status=TaskStatus.COMPLETED), actor)
        await service.create(TaskCreate(title="future"), actor)

        # Due dates in the past can only be set directly
        yesterday = datetime.now(timezone.utc) - timedelta(days=2)
        tasks = {t.title: t for t in (await db_session.execute(select(Task))).scalars()}
        tasks["late"].due_date = yesterday
        tasks["late but done"].due_date = yesterday
        tasks["future"].due_date = datetime.now(timezone.utc) + timedelta(days=5)
        await db_session.commit()

        stats = await service.statistics(test_user.id)
        assert stats["overdue"] == 1
        assert stats["total"] == 3
        assert stats["by_status"] == {"pending": 2, "in_progress": 0, "completed": 1, "cancelled": 0}

    async def test_scoped_to_user(self, service, test_user, other_user):
        await service.create(TaskCreate(title="a"), actor_for(test_user))
        await service.create(TaskCreate(title="b"), actor_for(other_user))
        assert (await service.statistics(test_user.id))["total"] == 1
        assert (await service.statistics(None))["total"] == 2
