# policy.py — Access policy: one pure decision function for every guarded action
#
# Verdicts are computed from (actor role, actor id, resource creator/assignee or
# target account id) on every call. Nothing is cached: role and ownership can
# change between two requests.

from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel

from errors import ForbiddenError
from models import UserRole


class Actor(BaseModel):
    id: str
    email: str = ""
    display_name: str = ""
    role: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.id)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @classmethod
    def anonymous(cls) -> "Actor":
        return cls(id="")


class Action(str, Enum):
    TASK_VIEW = "task:view"
    TASK_UPDATE = "task:update"
    TASK_UPDATE_STATUS = "task:update_status"
    TASK_DELETE = "task:delete"
    TASK_ASSIGN = "task:assign"
    ACCOUNT_LIST = "account:list"
    ACCOUNT_VIEW = "account:view"
    ACCOUNT_UPDATE = "account:update"
    ACCOUNT_DEACTIVATE = "account:deactivate"
    ACCOUNT_DELETE = "account:delete"
    ACCOUNT_TOGGLE = "account:toggle"
    NOTIFICATION_ADMIN = "notification:admin"


class Verdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class TaskLike(Protocol):
    creator_id: str
    assignee_id: Optional[str]


TASK_ACTIONS = frozenset({
    Action.TASK_VIEW, Action.TASK_UPDATE, Action.TASK_UPDATE_STATUS,
    Action.TASK_DELETE, Action.TASK_ASSIGN,
})

# Allowed for the account owner regardless of role
SELF_SERVICE_ACTIONS = frozenset({Action.ACCOUNT_VIEW, Action.ACCOUNT_UPDATE})

# Vetoed when the target is the actor, even for admins
SELF_PROTECTED_ACTIONS = frozenset({
    Action.ACCOUNT_DEACTIVATE, Action.ACCOUNT_DELETE, Action.ACCOUNT_TOGGLE,
})

DENY_MESSAGES = {
    Action.TASK_VIEW: "Access denied",
    Action.TASK_UPDATE: "Access denied",
    Action.TASK_UPDATE_STATUS: "Access denied: you do not have permission to update this task",
    Action.TASK_DELETE: "Access denied. Only task creator or admin can delete tasks.",
    Action.TASK_ASSIGN: "Access denied. Admin privileges required.",
    Action.ACCOUNT_DEACTIVATE: "Cannot deactivate your own account",
    Action.ACCOUNT_DELETE: "Cannot delete your own account",
    Action.ACCOUNT_TOGGLE: "Cannot deactivate your own account",
}


def _task_verdict(actor: Actor, action: Action, task: TaskLike) -> Verdict:
    if actor.is_admin:
        return Verdict.ALLOW
    is_creator = actor.id == task.creator_id
    is_assignee = task.assignee_id is not None and actor.id == task.assignee_id

    if action in (Action.TASK_VIEW, Action.TASK_UPDATE, Action.TASK_UPDATE_STATUS):
        allowed = is_creator or is_assignee
    elif action == Action.TASK_DELETE:
        allowed = is_creator
    else:
        allowed = False
    return Verdict.ALLOW if allowed else Verdict.DENY


def _account_verdict(actor: Actor, action: Action, target_id: Optional[str]) -> Verdict:
    is_self = target_id is not None and actor.id == target_id

    allowed = actor.is_admin or (is_self and action in SELF_SERVICE_ACTIONS)
    # Self-protection veto runs after the role check and wins over it
    if is_self and action in SELF_PROTECTED_ACTIONS:
        allowed = False
    return Verdict.ALLOW if allowed else Verdict.DENY


def decide(
    actor: Actor,
    action: Action,
    task: Optional[TaskLike] = None,
    target_id: Optional[str] = None,
) -> Verdict:
    """Policy verdict for one action on one resource.

    Task actions need ``task`` (anything exposing ``creator_id`` and
    ``assignee_id``). Account actions take the target account id; actions
    with no single target (listing) pass ``None``.
    """
    if not actor.is_authenticated:
        return Verdict.DENY
    if action in TASK_ACTIONS:
        if task is None:
            raise ValueError(f"{action.value} needs a task to decide on")
        return _task_verdict(actor, action, task)
    if action == Action.NOTIFICATION_ADMIN:
        return Verdict.ALLOW if actor.is_admin else Verdict.DENY
    return _account_verdict(actor, action, target_id)


def is_allowed(actor: Actor, action: Action, **resource) -> bool:
    return decide(actor, action, **resource) is Verdict.ALLOW


def authorize(actor: Actor, action: Action, **resource) -> None:
    """Raise ForbiddenError unless the policy allows the action"""
    if decide(actor, action, **resource) is Verdict.DENY:
        raise ForbiddenError(DENY_MESSAGES.get(action))
