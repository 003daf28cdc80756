"""Authorization rules for chat threads.

Rules are evaluated in order; each returns ``True`` (permit), ``False``
(deny) or ``None`` (abstain). The first decisive answer wins and an action
nobody decides on is denied. Denial is a return value, never an exception.
"""
from collections.abc import Callable, Sequence
from typing import Literal, Protocol

from app.config import ChatConfig
from app.models.chat import ChatThread
from app.models.enums import ChatThreadStatus, Role

ChatAction = Literal["view", "post", "close"]
CHAT_ACTIONS: tuple[ChatAction, ...] = ("view", "post", "close")


class Actor(Protocol):
    id: int
    role: Role


Rule = Callable[[Actor, ChatThread, ChatAction, ChatConfig], bool | None]


def _is_admin(actor: Actor) -> bool:
    role = actor.role if isinstance(actor.role, Role) else Role(actor.role)
    return role == Role.ADMIN


def _is_participant(actor: Actor, thread: ChatThread) -> bool:
    return actor.id is not None and actor.id in thread.participant_ids


def admin_override(actor: Actor, thread: ChatThread, action: ChatAction, config: ChatConfig) -> bool | None:
    return True if _is_admin(actor) else None


def feature_gate(actor: Actor, thread: ChatThread, action: ChatAction, config: ChatConfig) -> bool | None:
    return None if config.enabled else False


def participant_rule(actor: Actor, thread: ChatThread, action: ChatAction, config: ChatConfig) -> bool | None:
    if action == "view":
        # Closed threads stay readable.
        return _is_participant(actor, thread)
    if action == "post":
        return thread.status == ChatThreadStatus.OPEN and _is_participant(actor, thread)
    if action == "close":
        # Closing twice is allowed; ChatService.close_thread no-ops.
        return _is_participant(actor, thread)
    return False


DEFAULT_RULES: tuple[Rule, ...] = (admin_override, feature_gate, participant_rule)


class ChatThreadPolicy:
    def __init__(self, config: ChatConfig, rules: Sequence[Rule] = DEFAULT_RULES):
        self.config = config
        self.rules = tuple(rules)

    def allows(self, actor: Actor, action: ChatAction, thread: ChatThread) -> bool:
        for rule in self.rules:
            decision = rule(actor, thread, action, self.config)
            if decision is not None:
                return decision
        return False

    def view(self, actor: Actor, thread: ChatThread) -> bool:
        return self.allows(actor, "view", thread)

    def post(self, actor: Actor, thread: ChatThread) -> bool:
        return self.allows(actor, "post", thread)

    def close(self, actor: Actor, thread: ChatThread) -> bool:
        return self.allows(actor, "close", thread)
