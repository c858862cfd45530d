# tests/test_policy.py — Access policy decisions (no database)
from types import SimpleNamespace

import pytest

from errors import ForbiddenError
from policy import Actor, Action, Verdict, decide, is_allowed, authorize

ADMIN = Actor(id="u-admin", role="admin")
CREATOR = Actor(id="u-3", role="user")
ASSIGNEE = Actor(id="u-4", role="user")
STRANGER = Actor(id="u-5", role="user")

TASK = SimpleNamespace(creator_id="u-3", assignee_id="u-4")
UNASSIGNED = SimpleNamespace(creator_id="u-3", assignee_id=None)


@pytest.mark.parametrize("actor,expected", [
    (ADMIN, Verdict.ALLOW),
    (CREATOR, Verdict.ALLOW),
    (ASSIGNEE, Verdict.ALLOW),
    (STRANGER, Verdict.DENY),
])
def test_view_task(actor, expected):
    assert decide(actor, Action.TASK_VIEW, task=TASK) is expected


@pytest.mark.parametrize("action", [Action.TASK_UPDATE, Action.TASK_UPDATE_STATUS])
def test_update_follows_view(action):
    assert is_allowed(CREATOR, action, task=TASK)
    assert is_allowed(ASSIGNEE, action, task=TASK)
    assert not is_allowed(STRANGER, action, task=TASK)


def test_delete_creator_or_admin_only():
    assert is_allowed(CREATOR, Action.TASK_DELETE, task=TASK)
    assert is_allowed(ADMIN, Action.TASK_DELETE, task=TASK)
    assert not is_allowed(ASSIGNEE, Action.TASK_DELETE, task=TASK)


def test_assign_admin_only():
    assert is_allowed(ADMIN, Action.TASK_ASSIGN, task=TASK)
    assert not is_allowed(CREATOR, Action.TASK_ASSIGN, task=TASK)


def test_unassigned_task():
    assert is_allowed(CREATOR, Action.TASK_VIEW, task=UNASSIGNED)
    assert not is_allowed(ASSIGNEE, Action.TASK_VIEW, task=UNASSIGNED)


def test_anonymous_denied_everything():
    anon = Actor.anonymous()
    assert not anon.is_authenticated
    assert decide(anon, Action.TASK_VIEW, task=TASK) is Verdict.DENY
    assert decide(anon, Action.ACCOUNT_VIEW, target_id="") is Verdict.DENY


def test_task_action_without_task():
    with pytest.raises(ValueError):
        decide(ADMIN, Action.TASK_VIEW)


class TestAccounts:
    def test_self_service(self):
        assert is_allowed(STRANGER, Action.ACCOUNT_VIEW, target_id=STRANGER.id)
        assert is_allowed(STRANGER, Action.ACCOUNT_UPDATE, target_id=STRANGER.id)
        assert not is_allowed(STRANGER, Action.ACCOUNT_VIEW, target_id=CREATOR.id)

    def test_admin_manages_others(self):
        for action in (Action.ACCOUNT_LIST, Action.ACCOUNT_UPDATE, Action.ACCOUNT_DELETE,
                       Action.ACCOUNT_DEACTIVATE, Action.ACCOUNT_TOGGLE):
            assert is_allowed(ADMIN, action, target_id=CREATOR.id)

    @pytest.mark.parametrize("action", [
        Action.ACCOUNT_DELETE, Action.ACCOUNT_DEACTIVATE, Action.ACCOUNT_TOGGLE,
    ])
    def test_admin_cannot_disable_self(self, action):
        assert decide(ADMIN, action, target_id=ADMIN.id) is Verdict.DENY

    def test_user_cannot_list(self):
        assert not is_allowed(CREATOR, Action.ACCOUNT_LIST)

    def test_notification_admin(self):
        assert is_allowed(ADMIN, Action.NOTIFICATION_ADMIN)
        assert not is_allowed(CREATOR, Action.NOTIFICATION_ADMIN)


def test_authorize_raises_with_message():
    with pytest.raises(ForbiddenError) as exc:
        authorize(ADMIN, Action.ACCOUNT_DELETE, target_id=ADMIN.id)
    assert exc.value.message == "Cannot delete your own account"
    assert exc.value.http_status == 403


def test_verdict_follows_role_change():
    promoted = Actor(id=STRANGER.id, role="admin")
    assert not is_allowed(STRANGER, Action.TASK_VIEW, task=TASK)
    assert is_allowed(promoted, Action.TASK_VIEW, task=TASK)
