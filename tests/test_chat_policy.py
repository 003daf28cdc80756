from types import SimpleNamespace

import pytest

from app.config import ChatConfig
from app.models.chat import ChatThread
from app.models.enums import ChatThreadStatus, Role
from app.policies import ChatThreadPolicy
from app.policies.chat_thread import CHAT_ACTIONS, admin_override, feature_gate, participant_rule

CLIENT = SimpleNamespace(id=5, role=Role.USER)
ASSIGNED_ADMIN = SimpleNamespace(id=9, role=Role.ADMIN)
OTHER_ADMIN = SimpleNamespace(id=11, role=Role.ADMIN)
OUTSIDER = SimpleNamespace(id=7, role=Role.USER)

ENABLED = ChatConfig(enabled=True)
DISABLED = ChatConfig(enabled=False)


def _thread(status: ChatThreadStatus = ChatThreadStatus.OPEN, admin_id: int | None = 9) -> ChatThread:
    return ChatThread(id=1, request_id=3, client_id=5, admin_id=admin_id, status=status)


@pytest.mark.parametrize(
    "actor, action, status, expected",
    [
        (CLIENT, "view", ChatThreadStatus.OPEN, True),
        (CLIENT, "post", ChatThreadStatus.OPEN, True),
        (CLIENT, "close", ChatThreadStatus.OPEN, True),
        (CLIENT, "view", ChatThreadStatus.CLOSED, True),
        (CLIENT, "post", ChatThreadStatus.CLOSED, False),
        (CLIENT, "close", ChatThreadStatus.CLOSED, True),
        (OUTSIDER, "view", ChatThreadStatus.OPEN, False),
        (OUTSIDER, "post", ChatThreadStatus.OPEN, False),
        (OUTSIDER, "close", ChatThreadStatus.OPEN, False),
        (ASSIGNED_ADMIN, "post", ChatThreadStatus.CLOSED, True),
    ],
)
def test_participant_truth_table(actor, action, status, expected):
    policy = ChatThreadPolicy(ENABLED)
    assert policy.allows(actor, action, _thread(status)) is expected


def test_named_helpers_match_allows():
    policy = ChatThreadPolicy(ENABLED)
    thread = _thread()
    assert policy.view(CLIENT, thread) is True
    assert policy.post(CLIENT, thread) is True
    assert policy.close(CLIENT, thread) is True
    assert policy.view(OUTSIDER, thread) is False


@pytest.mark.parametrize("action", CHAT_ACTIONS)
def test_feature_flag_off_denies_everyone_but_admins(action):
    policy = ChatThreadPolicy(DISABLED)
    thread = _thread()
    assert policy.allows(CLIENT, action, thread) is False
    assert policy.allows(OUTSIDER, action, thread) is False
    assert policy.allows(ASSIGNED_ADMIN, action, thread) is True


@pytest.mark.parametrize("action", CHAT_ACTIONS)
def test_admin_override_applies_to_unassigned_admin(action):
    thread = _thread(status=ChatThreadStatus.CLOSED, admin_id=None)
    assert ChatThreadPolicy(ENABLED).allows(OTHER_ADMIN, action, thread) is True


def test_admin_role_given_as_string_is_recognised():
    actor = SimpleNamespace(id=42, role="ADMIN")
    assert ChatThreadPolicy(DISABLED).allows(actor, "post", _thread()) is True


def test_unknown_action_is_denied():
    assert ChatThreadPolicy(ENABLED).allows(CLIENT, "delete", _thread()) is False


def test_thread_without_admin_keeps_client_access():
    thread = _thread(admin_id=None)
    policy = ChatThreadPolicy(ENABLED)
    assert policy.allows(CLIENT, "post", thread) is True
    assert policy.allows(ASSIGNED_ADMIN, "view", thread) is True


def test_rules_abstain_or_decide():
    thread = _thread()
    assert admin_override(CLIENT, thread, "view", ENABLED) is None
    assert admin_override(ASSIGNED_ADMIN, thread, "view", ENABLED) is True
    assert feature_gate(CLIENT, thread, "view", ENABLED) is None
    assert feature_gate(CLIENT, thread, "view", DISABLED) is False
    assert participant_rule(OUTSIDER, thread, "view", ENABLED) is False


def test_no_decisive_rule_means_deny():
    policy = ChatThreadPolicy(ENABLED, rules=[admin_override])
    assert policy.allows(CLIENT, "view", _thread()) is False
